from django.db import models
from django.db.models import Q


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True


class Transaction(TimeStampedModel):
    """Ledger row for a payment outcome.

    SUCCESS rows are the credited payments and are unique per payment id.
    FAILED rows are audit entries and may repeat.
    """

    STATUS_SUCCESS = "SUCCESS"
    STATUS_FAILED = "FAILED"
    STATUS_CHOICES = [
        (STATUS_SUCCESS, "Success"),
        (STATUS_FAILED, "Failed"),
    ]

    order_id = models.CharField(max_length=191, db_index=True)
    payment_id = models.CharField(max_length=191, db_index=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    amount = models.PositiveBigIntegerField(null=True, blank=True)
    method = models.CharField(max_length=64, blank=True)
    reason = models.CharField(max_length=255, blank=True)
    raw_response = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["payment_id"],
                condition=Q(status="SUCCESS"),
                name="unique_success_per_payment",
            ),
        ]

    def __str__(self):
        return f"{self.status} tx {self.payment_id} for {self.order_id}"


class VerificationAttempt(TimeStampedModel):
    """One row per inbound verification or callback, whatever the verdict."""

    VERDICT_VALID = "valid"
    VERDICT_INVALID = "invalid"
    VERDICT_DUPLICATE = "duplicate"
    VERDICT_ERROR = "error"
    VERDICT_CHOICES = [
        (VERDICT_VALID, "Valid"),
        (VERDICT_INVALID, "Invalid"),
        (VERDICT_DUPLICATE, "Duplicate"),
        (VERDICT_ERROR, "Error"),
    ]

    GATEWAY_CAPTURED = "captured"
    GATEWAY_OTHER = "other"
    GATEWAY_STATUS_CHOICES = [
        (GATEWAY_CAPTURED, "Captured"),
        (GATEWAY_OTHER, "Other"),
    ]

    SOURCE_DIRECT = "direct"
    SOURCE_CALLBACK = "callback"
    SOURCE_CHOICES = [
        (SOURCE_DIRECT, "Direct verify"),
        (SOURCE_CALLBACK, "Gateway callback"),
    ]

    order_id = models.CharField(max_length=191, db_index=True)
    payment_id = models.CharField(max_length=191, db_index=True)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default=SOURCE_DIRECT)
    received_signature = models.CharField(max_length=191, blank=True)
    computed_signature = models.CharField(max_length=191, blank=True)
    signature_matched = models.BooleanField(default=False)
    status_from_gateway = models.CharField(
        max_length=20, choices=GATEWAY_STATUS_CHOICES, null=True, blank=True
    )
    verdict = models.CharField(max_length=20, choices=VERDICT_CHOICES)
    reason = models.CharField(max_length=64, blank=True)
    gateway_response = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.verdict} attempt for {self.payment_id}"
