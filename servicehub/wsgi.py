"""
WSGI config for the ServiceHub booking engine.
"""
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'servicehub.settings.production')

application = get_wsgi_application()
