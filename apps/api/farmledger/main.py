from __future__ import annotations

import logging

from farmledger.core.config import Settings, get_settings
from farmledger.logging import configure_logging
from farmledger.otel import configure_tracing

import farmledger.platform.ledger  # noqa: F401  registers session guards
import farmledger.business.projects.models  # noqa: F401
import farmledger.business.settlement  # noqa: F401  registers settlement guards
import farmledger.business.period_close  # noqa: F401
import farmledger.business.corrections  # noqa: F401


logger = logging.getLogger("farmledger.main")


def bootstrap(settings: Settings | None = None) -> Settings:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    configure_tracing(settings)
    logger.info("farmledger.started", extra={"status": settings.app_env})
    return settings
