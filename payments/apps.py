from django.apps import AppConfig
from django.conf import settings


class PaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"

    def ready(self):
        from .catalog import get_catalog
        from .state import VerificationState

        # Fail at startup rather than on the first order.
        get_catalog()
        # Lives for the life of the process; cleared on restart.
        self.state = VerificationState(token_ttl=settings.PAYMENTS_SUCCESS_TOKEN_TTL)
