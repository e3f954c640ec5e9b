from ume_messaging.services.accounts.user_repository import UserRepository

__all__ = ["UserRepository"]
