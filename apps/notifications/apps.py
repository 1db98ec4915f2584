from django.apps import AppConfig


class NotificationsConfig(AppConfig):
    name = 'apps.notifications'
    verbose_name = 'Notifications'

    def ready(self):
        from apps.notifications.dispatch import notification_created
        from apps.notifications.emails import send_notification_email
        notification_created.connect(send_notification_email, dispatch_uid='notification_email')
