from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand

from apps.orders.services import OrderSaga


class Command(BaseCommand):
    help = "Rolls back orders whose creation saga never committed"

    def add_arguments(self, parser):
        parser.add_argument(
            '--minutes',
            type=int,
            default=None,
            help='Treat STARTED orders older than this as stalled (default: SAGA_STALL_TIMEOUT_MINUTES)'
        )

    def handle(self, *args, **options):
        minutes = options['minutes']
        if minutes is None:
            minutes = settings.SAGA_STALL_TIMEOUT_MINUTES

        self.stdout.write(f"Replaying sagas stalled for more than {minutes} minutes...")
        replayed, failing = OrderSaga().replay_stalled(timedelta(minutes=minutes))

        if failing:
            self.stdout.write(self.style.WARNING(f"{failing} orders could not be rolled back, see logs."))
        self.stdout.write(self.style.SUCCESS(f"Replay complete. Rolled back {replayed} orders."))
