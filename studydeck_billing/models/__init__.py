# Models package: import all models here so Alembic can discover them.

from studydeck_billing.models.user import User  # noqa: F401
from studydeck_billing.models.subscription import SubscriptionRecord  # noqa: F401
from studydeck_billing.models.provider_event import ProviderEvent  # noqa: F401
from studydeck_billing.models.sent_notification import SentNotification  # noqa: F401
from studydeck_billing.models.audit import AuditEvent  # noqa: F401
from studydeck_billing.models.job_run import JobRun  # noqa: F401
