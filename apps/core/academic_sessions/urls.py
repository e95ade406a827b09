from django.urls import path

from .views import (
    session_activate,
    session_list,
    term_activate,
    term_list,
)

urlpatterns = [
    path('', session_list, name='session_list'),
    path('<int:pk>/activate/', session_activate, name='session_activate'),
    path('<int:session_id>/terms/', term_list, name='term_list'),
    path('terms/<int:pk>/activate/', term_activate, name='term_activate'),
]
