"""Bookstore vertical — cart to order consistency pipeline.

Everything between "add to cart" and "order paid":
- Cart & stock ledger with per-variant reservations
- Guest to user cart merge with a conflict report
- Checkout orchestrator with idempotent order placement
- PhonePe / Razorpay providers behind circuit breaker + retry
- Webhook processing, refunds and fulfillment transitions
- Maintenance sweeps for stale reservations and timed-out orders
"""
