import uuid

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.test import RequestFactory

from payments.services import compute_payment_signature
from payments.views import payment_callback


class Command(BaseCommand):
    help = "Simulate a signed Razorpay checkout callback locally"

    def add_arguments(self, parser):
        parser.add_argument("--order-id", type=str, required=True, help="Razorpay Order ID (e.g., order_123)")
        parser.add_argument(
            "--payment-id", type=str, default=f"pay_{uuid.uuid4().hex[:10]}", help="Razorpay Payment ID"
        )
        parser.add_argument("--bad-signature", action="store_true", help="Send a tampered signature")
        parser.add_argument("--query", action="store_true", help="Send fields in the query string instead of the body")

    def handle(self, *args, **options):
        order_id = options["order_id"]
        payment_id = options["payment_id"]

        secret = settings.RAZORPAY_KEY_SECRET
        if not secret:
            raise CommandError("No RAZORPAY_KEY_SECRET found in settings.")

        signature = compute_payment_signature(order_id, payment_id, secret)
        if options["bad_signature"]:
            signature = signature[::-1]

        fields = {
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        }
        factory = RequestFactory()
        if options["query"]:
            request = factory.get("/payment_callback", data=fields)
        else:
            request = factory.post("/payment_callback", data=fields)

        self.stdout.write(f"Sending callback for payment {payment_id} on order {order_id}...")
        response = payment_callback(request)

        if response.status_code == 302:
            self.stdout.write(self.style.SUCCESS(f"Payment verified, redirected to {response['Location']}"))
        else:
            self.stdout.write(self.style.ERROR(f"Callback answered with status {response.status_code}"))
