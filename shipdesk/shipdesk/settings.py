from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config('SECRET_KEY', default='django-insecure-shipdesk-dev-key')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config('DEBUG', default=True, cast=bool)

ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1,0.0.0.0', cast=Csv())

# Admin console frontend
CORS_ALLOWED_ORIGINS = config(
    'CORS_ALLOWED_ORIGINS',
    default='http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000',
    cast=Csv()
)
CORS_ALLOW_CREDENTIALS = True

CSRF_TRUSTED_ORIGINS = CORS_ALLOWED_ORIGINS

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'corsheaders',
    'rest_framework',
    'shipments',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',  # Keep this first
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'shipdesk.urls'

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

WSGI_APPLICATION = 'shipdesk.wsgi.application'

LOG_DIR = Path(config('LOG_DIR', default=str(BASE_DIR / 'logs')))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} [{threadName}] {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'level': 'DEBUG',
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'file': {
            'level': 'ERROR',
            'class': 'logging.FileHandler',
            'filename': LOG_DIR / 'shipdesk.log',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': True,
        },
        'django.request': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'shipments': {
            'handlers': ['console', 'file'],
            'level': config('SHIPMENTS_LOG_LEVEL', default='INFO'),
            'propagate': False,
        },
        'apscheduler': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}

# Database
USE_POSTGRES = config('USE_POSTGRES', default=False, cast=bool)

if USE_POSTGRES:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': config('LOCAL_DB_NAME'),
            'USER': config('LOCAL_DB_USER'),
            'PASSWORD': config('LOCAL_DB_PASSWORD'),
            'HOST': config('LOCAL_DB_HOST', default='localhost'),
            'PORT': config('LOCAL_DB_PORT', default='5432'),
        }
    }
else:  # local development and tests
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# Password validation
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

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'Asia/Kolkata'
USE_I18N = True
USE_TZ = True

# Static files
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# REST Framework configuration
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAdminUser',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}

# Logistics provider
LOGISTICS_API_BASE = config('LOGISTICS_API_BASE', default='https://apiv2.shiprocket.in/v1/external')
LOGISTICS_EMAIL = config('LOGISTICS_EMAIL', default='')
LOGISTICS_PASSWORD = config('LOGISTICS_PASSWORD', default='')
LOGISTICS_PICKUP_PINCODE = config('LOGISTICS_PICKUP_PINCODE', default='110001')
LOGISTICS_DEFAULT_PICKUP_LOCATION = config('LOGISTICS_DEFAULT_PICKUP_LOCATION', default='Primary')
LOGISTICS_HTTP_TIMEOUT = config('LOGISTICS_HTTP_TIMEOUT', default=10, cast=float)
LOGISTICS_TOKEN_TTL = config('LOGISTICS_TOKEN_TTL', default=8 * 24 * 60 * 60, cast=int)  # tokens live 10 days
LOGISTICS_WEBHOOK_TOKEN = config('LOGISTICS_WEBHOOK_TOKEN', default='')

# Retry policy for transient provider failures
LOGISTICS_RETRY_ATTEMPTS = config('LOGISTICS_RETRY_ATTEMPTS', default=3, cast=int)
LOGISTICS_RETRY_BASE_DELAY = config('LOGISTICS_RETRY_BASE_DELAY', default=0.5, cast=float)
LOGISTICS_RETRY_FACTOR = config('LOGISTICS_RETRY_FACTOR', default=2, cast=float)
LOGISTICS_RETRY_JITTER = config('LOGISTICS_RETRY_JITTER', default=0.2, cast=float)

# Batch drivers
LOGISTICS_BULK_BATCH_SIZE = config('LOGISTICS_BULK_BATCH_SIZE', default=10, cast=int)
LOGISTICS_BULK_MAX_ORDERS = config('LOGISTICS_BULK_MAX_ORDERS', default=100, cast=int)
LOGISTICS_BULK_MAX_WORKERS = config('LOGISTICS_BULK_MAX_WORKERS', default=4, cast=int)
LOGISTICS_TRACKING_INTERVAL = config('LOGISTICS_TRACKING_INTERVAL', default=30, cast=int)
LOGISTICS_TRACKING_MAX_WORKERS = config('LOGISTICS_TRACKING_MAX_WORKERS', default=4, cast=int)
LOGISTICS_ORDER_LOCK_TIMEOUT = config('LOGISTICS_ORDER_LOCK_TIMEOUT', default=5, cast=float)

# Returns
LOGISTICS_RETURN_WINDOW_DAYS = config('LOGISTICS_RETURN_WINDOW_DAYS', default=30, cast=int)

# Wallet
LOGISTICS_WALLET_TTL = config('LOGISTICS_WALLET_TTL', default=300, cast=int)
LOGISTICS_MIN_WALLET_BALANCE = config('LOGISTICS_MIN_WALLET_BALANCE', default=100, cast=float)
