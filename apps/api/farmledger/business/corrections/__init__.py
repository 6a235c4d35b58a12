from farmledger.business.corrections import models  # noqa: F401
