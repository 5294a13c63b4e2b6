from django.core.management.base import BaseCommand, CommandError

from payments.exceptions import UnknownCourse
from payments.services import create_gateway_order


class Command(BaseCommand):
    help = "Create a Razorpay order for a course in the catalog."

    def add_arguments(self, parser):
        parser.add_argument("--course", required=True, help="Course name from the catalog")

    def handle(self, *args, **options):
        course = options["course"]
        try:
            data = create_gateway_order(course)
        except UnknownCourse:
            raise CommandError(f"Course {course!r} is not in the catalog.")

        self.stdout.write(
            self.style.SUCCESS(
                f"Razorpay order ready: {data['order_id']} ({data['amount']} {data['currency']})"
            )
        )
