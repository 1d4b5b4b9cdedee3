"""
Billing Package

Keeps each user's premium/trial/free status in step with Stripe.

Modules:
- signature: webhook signature check over the raw body
- events: typed webhook envelopes (tagged union on `type`)
- event_router: dispatch per event type, failure containment
- classifier: Stripe subscription -> normalized snapshot (pure)
- resolver: email / customer id / user id -> User row
- writer: snapshot overwrite + audit event, one transaction
- promo_policy: promo code validation, benefits, redemptions
- gateway: Stripe API calls behind the circuit breaker
- checkout: hosted checkout session creation and success-redirect sync

Usage:
    from services.billing.event_router import BillingEventRouter
    from services.billing.checkout import CheckoutService
"""
