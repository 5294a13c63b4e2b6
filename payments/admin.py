from django.contrib import admin

from .models import Transaction, VerificationAttempt


class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Transaction)
class TransactionAdmin(ReadOnlyAdmin):
    list_display = ("payment_id", "order_id", "status", "amount", "method", "reason", "created_at")
    list_filter = ("status", "method", "created_at")
    search_fields = ("order_id", "payment_id")


@admin.register(VerificationAttempt)
class VerificationAttemptAdmin(ReadOnlyAdmin):
    list_display = ("payment_id", "order_id", "source", "verdict", "reason", "signature_matched", "created_at")
    list_filter = ("verdict", "source", "signature_matched", "status_from_gateway")
    search_fields = ("order_id", "payment_id")
