"""
Subscription Root API v1

Endpoints:
- GET /subscribers/{identity}/proof - Membership proof for a subscriber
- POST /verify - Check a membership claim off-ledger
- POST /sync - Trigger a root sync cycle
- GET /roots - Recent root publications
- GET /roots/latest - Latest root publication
"""

from fastapi import APIRouter

from subroot.api.v1.endpoints import subscriptions

router = APIRouter()
router.include_router(subscriptions.router, tags=["Subscriptions"])
