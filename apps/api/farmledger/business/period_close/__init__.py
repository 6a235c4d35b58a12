from farmledger.business.period_close import models  # noqa: F401
