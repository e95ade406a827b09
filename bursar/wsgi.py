"""
WSGI config for the bursar project.
"""
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'bursar.settings')

application = get_wsgi_application()
