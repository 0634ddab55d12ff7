# config/celery.py

import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('storefront')

# CELERY_* keys from Django settings
app.config_from_object('django.conf:settings', namespace='CELERY')

# Picks up apps/<app>/tasks.py
app.autodiscover_tasks()

