from django.urls import path

from . import views

app_name = "payments"

urlpatterns = [
    path("create_order", views.create_order, name="create-order"),
    path("verify_payment", views.verify_payment, name="verify-payment"),
    path("payment_callback", views.payment_callback, name="payment-callback"),
    path("payment_success", views.payment_success, name="payment-success"),
    path("api/success_token/<str:token>", views.success_token_detail, name="success-token"),
]
