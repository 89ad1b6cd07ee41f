"""
Core modules for Loyalty Guard.

This package contains the session, step-up authentication, entitlement,
ledger and payment controllers.
"""
