from ume_messaging.middleware.activity import ActivityTrackingMiddleware

__all__ = ["ActivityTrackingMiddleware"]
