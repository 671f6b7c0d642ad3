# Models package: import all models here so Alembic can discover them.

from tierpay.models.profile import Profile  # noqa: F401
from tierpay.models.transaction import PaymentTransaction  # noqa: F401
from tierpay.models.webhook_event import PaymentWebhookEvent  # noqa: F401
from tierpay.models.audit import PaymentAuditEntry  # noqa: F401
