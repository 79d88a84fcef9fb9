"""Import all models so that ``Base.metadata`` knows every payment table."""

from paygate.db.base_class import Base  # noqa: F401
from paygate.models.callback import PaymentCallback  # noqa: F401
from paygate.models.channel import PaymentChannel  # noqa: F401
from paygate.models.config import PaymentConfig  # noqa: F401
from paygate.models.order import PaymentOrder  # noqa: F401
from paygate.models.plugin import PaymentPlugin  # noqa: F401
from paygate.models.transaction import PaymentTransaction  # noqa: F401
