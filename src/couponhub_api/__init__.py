"""CouponHub entitlement engine service."""
