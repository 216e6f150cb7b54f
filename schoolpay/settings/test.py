from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

SCHOOLPAY_GATEWAY = {
    'BASE_URL': 'https://pg.example.com/erp',
    'API_KEY': 'test-api-key',
    'PG_KEY': 'test-pg-signing-secret-0123456789abcdef',
    'SCHOOL_ID': 'school-default',
    'GATEWAY_NAME': 'Edviron',
    'CALLBACK_URL': 'https://frontend.example.com/payment-callback',
    'CREATE_TIMEOUT': 30,
    'STATUS_TIMEOUT': 15,
}
