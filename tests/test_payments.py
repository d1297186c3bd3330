"""
Tests for payment endpoints: escrow order creation, checkout confirmation,
Razorpay webhook handling.
"""

import hashlib
import hmac
import json

import pytest
from httpx import AsyncClient

from shared.models.models import Booking, BookingStatus, PaymentStatus, Slot
from tests.conftest import auth_headers, pending_booking

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "rzp_webhook_secret"


def _checkout_signature(order_id: str, payment_id: str) -> str:
    return hmac.new(KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def _webhook(event: str, order_id: str, payment_id: str) -> tuple[bytes, dict]:
    body = json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id}}},
    }).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}


@pytest.fixture
async def pending(machine, learner, listing, slot) -> Booking:
    return await pending_booking(machine, learner, listing, slot)


async def _initiate(client: AsyncClient, booking_id, headers) -> str:
    resp = await client.post("/payments/initiate", json={"booking_id": str(booking_id)}, headers=headers)
    assert resp.status_code == 200
    return resp.json()["razorpay_order_id"]


# ── Initiate ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initiate_payment(client: AsyncClient, pending, learner, processor):
    resp = await client.post(
        "/payments/initiate", json={"booking_id": str(pending.id)}, headers=auth_headers(learner)
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["amount"] == 100000
    assert data["currency"] == "INR"
    assert data["razorpay_key_id"] == "rzp_test_key"
    assert data["razorpay_order_id"].startswith("order_")
    assert processor.count("authorize_hold") == 1


@pytest.mark.asyncio
async def test_initiate_payment_twice_reuses_order(client: AsyncClient, pending, learner, processor):
    headers = auth_headers(learner)
    first = await _initiate(client, pending.id, headers)
    second = await _initiate(client, pending.id, headers)
    assert first == second
    assert processor.count("authorize_hold") == 1


@pytest.mark.asyncio
async def test_only_payer_can_initiate(client: AsyncClient, pending, other_learner):
    resp = await client.post(
        "/payments/initiate", json={"booking_id": str(pending.id)}, headers=auth_headers(other_learner)
    )
    assert resp.status_code == 403


# ── Confirm ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_confirm_payment(client: AsyncClient, pending, learner, dispatcher, processor):
    headers = auth_headers(learner)
    order_id = await _initiate(client, pending.id, headers)

    resp = await client.post("/payments/confirm", json={
        "booking_id": str(pending.id),
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_checkout_1",
        "razorpay_signature": _checkout_signature(order_id, "pay_checkout_1"),
    }, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "CONFIRMED"
    assert resp.json()["payment_status"] == "HELD"
    assert processor.count("capture") == 1
    assert dispatcher.templates() == ["BOOKING_REQUESTED", "PAYMENT_RECEIVED"]


@pytest.mark.asyncio
async def test_confirm_with_bad_signature(client: AsyncClient, pending, learner, processor):
    headers = auth_headers(learner)
    order_id = await _initiate(client, pending.id, headers)

    resp = await client.post("/payments/confirm", json={
        "booking_id": str(pending.id),
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_checkout_1",
        "razorpay_signature": "forged",
    }, headers=headers)

    assert resp.status_code == 400
    assert processor.count("capture") == 0


@pytest.mark.asyncio
async def test_confirm_with_foreign_order(client: AsyncClient, pending, learner):
    headers = auth_headers(learner)
    await _initiate(client, pending.id, headers)

    resp = await client.post("/payments/confirm", json={
        "booking_id": str(pending.id),
        "razorpay_order_id": "order_someone_else",
        "razorpay_payment_id": "pay_checkout_1",
        "razorpay_signature": _checkout_signature("order_someone_else", "pay_checkout_1"),
    }, headers=headers)

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_confirm_capture_failure_frees_slot(client: AsyncClient, db, pending, learner, slot, processor):
    headers = auth_headers(learner)
    booking_id, slot_id = pending.id, slot.id
    order_id = await _initiate(client, booking_id, headers)
    processor.fail("capture")

    resp = await client.post("/payments/confirm", json={
        "booking_id": str(booking_id),
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_checkout_1",
        "razorpay_signature": _checkout_signature(order_id, "pay_checkout_1"),
    }, headers=headers)

    assert resp.status_code == 502
    booking = await db.get(Booking, booking_id, populate_existing=True)
    assert booking.status == BookingStatus.CANCELLED
    assert (await db.get(Slot, slot_id, populate_existing=True)).booking_id is None


# ── Webhook ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client: AsyncClient):
    resp = await client.post(
        "/payments/webhook",
        content=b'{"event": "payment.authorized"}',
        headers={"X-Razorpay-Signature": "forged"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_authorized_confirms_once(client: AsyncClient, db, pending, learner, processor):
    booking_id = pending.id
    order_id = await _initiate(client, booking_id, auth_headers(learner))
    body, headers = _webhook("payment.authorized", order_id, "pay_hook_1")

    first = await client.post("/payments/webhook", content=body, headers=headers)
    redelivered = await client.post("/payments/webhook", content=body, headers=headers)

    assert first.json() == {"status": "ok"}
    assert redelivered.json() == {"status": "ok"}
    assert processor.count("capture") == 1
    booking = await db.get(Booking, booking_id, populate_existing=True)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.HELD


@pytest.mark.asyncio
async def test_webhook_failed_payment_cancels_booking(client: AsyncClient, db, pending, learner, slot):
    booking_id, slot_id = pending.id, slot.id
    order_id = await _initiate(client, booking_id, auth_headers(learner))
    body, headers = _webhook("payment.failed", order_id, "pay_hook_1")

    resp = await client.post("/payments/webhook", content=body, headers=headers)

    assert resp.json() == {"status": "ok"}
    booking = await db.get(Booking, booking_id, populate_existing=True)
    assert booking.status == BookingStatus.CANCELLED
    assert (await db.get(Slot, slot_id, populate_existing=True)).booking_id is None


@pytest.mark.asyncio
async def test_webhook_unknown_order(client: AsyncClient):
    body, headers = _webhook("payment.authorized", "order_unknown", "pay_hook_1")
    resp = await client.post("/payments/webhook", content=body, headers=headers)
    assert resp.json() == {"status": "not_found"}


@pytest.mark.asyncio
async def test_webhook_conflicting_payment_is_not_applied(client: AsyncClient, pending, learner):
    headers = auth_headers(learner)
    order_id = await _initiate(client, pending.id, headers)
    await client.post("/payments/confirm", json={
        "booking_id": str(pending.id),
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_checkout_1",
        "razorpay_signature": _checkout_signature(order_id, "pay_checkout_1"),
    }, headers=headers)

    body, hook_headers = _webhook("payment.authorized", order_id, "pay_other")
    resp = await client.post("/payments/webhook", content=body, headers=hook_headers)

    assert resp.json() == {"status": "not_applied", "code": "conflict"}
