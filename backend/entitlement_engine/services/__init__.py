"""
Business logic services package.

WHY: Services contain the reconciliation and entitlement logic separated
from API routes and data access, following the three-layer architecture
(API → Service → DAO).
"""
