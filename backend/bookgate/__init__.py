"""
Book access resolution and entitlement engine.
"""
