"""
Kindred Ops - API Package
=========================

FastAPI application and routers.
"""
