"""
API v1 routers for orders, reviews, delivery runs and realtime streams.
"""
