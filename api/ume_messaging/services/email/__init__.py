from ume_messaging.services.email.transport import (
    BrevoEmailTransport,
    EmailResult,
    EmailTransport,
)

__all__ = ["BrevoEmailTransport", "EmailResult", "EmailTransport"]
