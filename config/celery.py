# config/celery.py

import os
from celery import Celery

# Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('petmall')

# Load CELERY_* keys from Django settings
app.config_from_object('django.conf:settings', namespace='CELERY')

# Pick up tasks.py from every installed app
app.autodiscover_tasks()
