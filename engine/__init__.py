"""Rental commerce engine.

Pure decision functions plus the async services that persist their results:
- Pricing: pricelist resolution, rental price and deposit
- Availability: tri-state stock check over reservation windows
- Lifecycle: reservation state machine with fees, refunds and extensions
- Sweeper: scheduled late-return detection
- Installments and promo codes: checkout-time price modifiers

Storage, audit and notification delivery are injected through the
protocols in ``engine.stores``.
"""
