import json
import logging

import razorpay
import requests
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.shortcuts import redirect, render
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .exceptions import TokenNotFound, UnknownCourse
from .models import VerificationAttempt
from .services import create_gateway_order
from .verification import CallbackPayload, create_verification, handle_callback, redeem_success_token

logger = logging.getLogger(__name__)

VERIFY_STATUS_CODES = {
    VerificationAttempt.VERDICT_VALID: 200,
    VerificationAttempt.VERDICT_INVALID: 200,
    VerificationAttempt.VERDICT_DUPLICATE: 409,
    VerificationAttempt.VERDICT_ERROR: 502,
}

CALLBACK_STATUS_CODES = {
    VerificationAttempt.VERDICT_INVALID: 200,
    VerificationAttempt.VERDICT_DUPLICATE: 409,
    VerificationAttempt.VERDICT_ERROR: 502,
}


def _request_data(request: HttpRequest) -> dict:
    """JSON or form-encoded body as a plain dict. Raises ValueError on bad JSON."""
    if request.content_type == "application/json":
        data = json.loads(request.body.decode("utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError("Expected a JSON object")
        return data
    return request.POST.dict()


@csrf_exempt
@require_POST
def create_order(request: HttpRequest) -> HttpResponse:
    """Create a Razorpay order for a catalog course."""
    try:
        data = _request_data(request)
    except ValueError:
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    course = data.get("course")
    logger.info("Received order creation request for course %r", course)

    try:
        order = create_gateway_order(course)
    except UnknownCourse:
        return JsonResponse({"error": "Invalid course selected"}, status=400)
    except (
        razorpay.errors.BadRequestError,
        razorpay.errors.GatewayError,
        razorpay.errors.ServerError,
        requests.exceptions.RequestException,
    ) as e:
        logger.error("Razorpay API error creating order for %r: %s", course, e, exc_info=True)
        return JsonResponse({"error": str(e)}, status=502)

    return JsonResponse(order)


@csrf_exempt
@require_POST
def verify_payment(request: HttpRequest) -> HttpResponse:
    """Verify a payment for a caller holding the checkout response."""
    try:
        data = _request_data(request)
    except ValueError:
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    order_id = data.get("order_id") or data.get("razorpay_order_id")
    payment_id = data.get("payment_id") or data.get("razorpay_payment_id")
    signature = data.get("signature") or data.get("razorpay_signature")
    if not all(isinstance(value, str) and value for value in (order_id, payment_id, signature)):
        return JsonResponse(
            {"error": "order_id, payment_id and signature are required strings"}, status=400
        )

    verdict = create_verification(order_id, payment_id, signature)
    return JsonResponse(verdict.as_dict(), status=VERIFY_STATUS_CODES[verdict.verdict])


@csrf_exempt
@require_http_methods(["GET", "POST"])
def payment_callback(request: HttpRequest) -> HttpResponse:
    """
    Razorpay hosted checkout callback.

    Razorpay posts the result as a form, but the same fields can arrive in
    the query string; the body wins when both are present. A verified payment
    is redirected to a one-time success link instead of echoing its details.
    """
    logger.info("Razorpay callback received body=%s query=%s", request.POST.dict(), request.GET.dict())

    payload = CallbackPayload.from_sources(request.POST, request.GET)
    result = handle_callback(payload)
    verdict = result.verdict

    if verdict.valid:
        return redirect(result.redirect_target)

    status = CALLBACK_STATUS_CODES[verdict.verdict]
    if payload.missing_fields:
        status = 400
    return render(
        request,
        "payments/callback_result.html",
        {"verdict": verdict, "missing_fields": payload.missing_fields},
        status=status,
    )


@require_GET
def payment_success(request: HttpRequest) -> HttpResponse:
    try:
        receipt = redeem_success_token(request.GET.get("token", ""))
    except TokenNotFound:
        return render(request, "payments/success.html", {"receipt": None}, status=404)

    return render(
        request,
        "payments/success.html",
        {"receipt": receipt, "confirmed_at": timezone.now()},
    )


@require_GET
def success_token_detail(request: HttpRequest, token: str) -> HttpResponse:
    try:
        receipt = redeem_success_token(token)
    except TokenNotFound:
        return JsonResponse({"error": "Token not found or expired"}, status=404)
    return JsonResponse({"status": "SUCCESS", **receipt.as_dict()})
