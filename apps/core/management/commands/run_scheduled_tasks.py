"""
management command: run_scheduled_tasks

Runs the periodic engine jobs (escrow release, waitlist expiry, stale and
no-show bookings, reminders, ratings, notification cleanup).

Run via OS cron, e.g. every 5 minutes:
  */5 * * * *  /path/to/venv/bin/python manage.py run_scheduled_tasks --task escrow

On Render.com: add a Cron Job service with the same command.
"""
import json

from django.core.management.base import BaseCommand
from django.core.serializers.json import DjangoJSONEncoder

from apps.core.scheduler import TASK_NAMES, run_task


class Command(BaseCommand):
    help = 'Run periodic booking engine tasks'

    def add_arguments(self, parser):
        parser.add_argument(
            '--task', choices=TASK_NAMES, default='all',
            help='Which task group to run (default: all)',
        )

    def handle(self, *args, **options):
        results = run_task(options['task'])
        failed = [name for name, result in results.items()
                  if isinstance(result, dict) and (result.get('error') or result.get('failed'))]

        for name, result in results.items():
            self.stdout.write(f'{name}: {json.dumps(result, cls=DjangoJSONEncoder)}')

        summary = f"run_scheduled_tasks: {options['task']} — {len(results)} job(s)"
        if failed:
            self.stdout.write(self.style.WARNING(f"{summary}, with failures in {', '.join(failed)}"))
        else:
            self.stdout.write(self.style.SUCCESS(summary))
