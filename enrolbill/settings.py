"""
Django settings for enrolbill project.

Scope:
- families and students
- recurring class templates, holidays and cancellations
- enrolments, billing plans and the credit ledger
- invoices, payments, allocations and the net-owing reconciliation
"""
import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


DEBUG = os.getenv('DJANGO_DEBUG', 'False').lower() in {'1', 'true', 'yes'}
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'change-this-secret-key-in-production-5b0c1d8e2f7a4e63a9d0c4b7e1f28a91',
)
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
    if host.strip()
]


INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'apps.core.families.apps.FamiliesConfig',
    'apps.core.schedule.apps.ScheduleConfig',
    'apps.core.enrolments.apps.EnrolmentsConfig',
    'apps.core.billing.apps.BillingConfig',
]


DATABASES = {
    'default': {
        'ENGINE': os.getenv('DJANGO_DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.getenv('DJANGO_DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv('DJANGO_DB_USER', ''),
        'PASSWORD': os.getenv('DJANGO_DB_PASSWORD', ''),
        'HOST': os.getenv('DJANGO_DB_HOST', ''),
        'PORT': os.getenv('DJANGO_DB_PORT', ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


LANGUAGE_CODE = 'en-au'
TIME_ZONE = os.getenv('DJANGO_TIME_ZONE', 'UTC')
USE_I18N = True
USE_TZ = True

# Every billing "day" is a calendar day in this zone, whatever TIME_ZONE says.
BILLING_TIME_ZONE = os.getenv('BILLING_TIME_ZONE', 'Australia/Brisbane')
BILLING_MAX_HORIZON_WEEKS = int(os.getenv('BILLING_MAX_HORIZON_WEEKS', '520'))
BILLING_HORIZON_BUFFER_WEEKS = int(os.getenv('BILLING_HORIZON_BUFFER_WEEKS', '4'))


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('BILLING_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}


TEST_RUNNER = 'apps.core.test_runner.LocalAppsDiscoverRunner'
