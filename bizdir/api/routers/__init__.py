"""
FastAPI routers for the admin import and duplicate-management endpoints.

Every router here requires an authenticated admin caller.
"""
