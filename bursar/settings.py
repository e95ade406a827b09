"""
Django settings for the bursar project.

Scope:
- Schools, users, bearer-token API auth and audit trail
- Academic sessions, terms and classes
- Students and class enrollment
- Multi-currency accounting (chart of accounts, journal entries)
- Student ledger, fees, payments, refunds and waivers
- Boarding (hostels, boarding fees, boarding payments)
- Fee analytics
"""
import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def env_flag(name, default='False'):
    return os.getenv(name, default).lower() in {'1', 'true', 'yes'}


DEBUG = env_flag('DJANGO_DEBUG')
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'change-this-secret-key-in-production-7c1d3f0b2a6e4d95b8e0c4a1f2d3e4b5',
)
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
    if host.strip()
]


INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'apps.core.users.apps.UsersConfig',
    'apps.core.schools.apps.SchoolsConfig',
    'apps.core.academic_sessions.apps.AcademicSessionsConfig',
    'apps.core.academics.apps.AcademicsConfig',
    'apps.core.students.apps.StudentsConfig',
    'apps.core.accounting.apps.AccountingConfig',
    'apps.core.fees.apps.FeesConfig',
    'apps.core.boarding.apps.BoardingConfig',
    'apps.core.analytics.apps.AnalyticsConfig',
]


MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'apps.core.users.middleware.ApiTokenAuthenticationMiddleware',
    'apps.core.schools.middleware.CurrentSchoolMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'apps.core.utils.middleware.ApiExceptionMiddleware',
]


ROOT_URLCONF = 'bursar.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'bursar.wsgi.application'


DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / os.getenv('DJANGO_DB_PATH', 'db.sqlite3'),
    }
}


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True


STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
AUTH_USER_MODEL = 'users.User'


CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG
SECURE_SSL_REDIRECT = env_flag('DJANGO_SECURE_SSL_REDIRECT')
SECURE_HSTS_SECONDS = int(os.getenv('DJANGO_SECURE_HSTS_SECONDS', '0'))
SECURE_HSTS_INCLUDE_SUBDOMAINS = env_flag('DJANGO_SECURE_HSTS_INCLUDE_SUBDOMAINS')
SECURE_HSTS_PRELOAD = env_flag('DJANGO_SECURE_HSTS_PRELOAD')
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'standard': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'standard',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'django.request': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}


API_TOKEN_TTL_HOURS = int(os.getenv('API_TOKEN_TTL_HOURS', '12'))
API_DEFAULT_PAGE_SIZE = int(os.getenv('API_DEFAULT_PAGE_SIZE', '20'))
API_MAX_PAGE_SIZE = int(os.getenv('API_MAX_PAGE_SIZE', '100'))

LEDGER_REVERSAL_WINDOW_DAYS = int(os.getenv('LEDGER_REVERSAL_WINDOW_DAYS', '30'))
FEES_ALLOW_OVERPAYMENT = env_flag('FEES_ALLOW_OVERPAYMENT')
DEFAULT_BASE_CURRENCY = os.getenv('DEFAULT_BASE_CURRENCY', 'USD').upper()
