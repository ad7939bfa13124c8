"""
Storage Manager

Rentable storage units for members:
- Unit assignment and release
- Violation accrual and finalization
- Stripe subscription reconciliation for active assignments
"""
