from django.apps import AppConfig


class WaitlistConfig(AppConfig):
    name = 'apps.waitlist'
    verbose_name = 'Waitlist'
