import time
from django.core.management.base import BaseCommand
from django.utils import timezone
from payments.exceptions import PaymentError
from payments.models import Order
from payments.services import get_status_service, set_order_status, upsert_order_status, normalize_status
from payments.utils import parse_amount

TERMINAL = {"success", "failed"}

class Command(BaseCommand):
    help = "Poll the payment gateway for processing orders and apply final statuses"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = (
            Order.objects.filter(status__in=["pending", "processing"], collect_request_id__isnull=False)
            .filter(updated_at__lt=cutoff)
            .order_by("updated_at", "pk")[:opts["max"]]
        )

        if not qs.exists():
            self.stdout.write(self.style.SUCCESS("No pending orders to reconcile."))
            return

        service = get_status_service()
        checked = updated = 0
        for o in qs:
            checked += 1
            try:
                data = service.check_gateway_status(o.custom_order_id)
            except PaymentError as e:
                self.stdout.write(self.style.WARNING(f"{o.custom_order_id}: {e.message}"))
                continue

            status = normalize_status(data.get("status"), default="")
            if status not in TERMINAL:
                self.stdout.write(f"{o.custom_order_id}: status={status or 'UNKNOWN'}")
            else:
                upsert_order_status(o, {
                    "status": status,
                    "transaction_amount": parse_amount(data.get("amount")),
                    "payment_details": data.get("details"),
                })
                set_order_status(o.custom_order_id, status)
                updated += 1
                self.stdout.write(self.style.SUCCESS(f"Updated {o.custom_order_id} -> {status}"))
            time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {checked}, updated {updated} orders."))
