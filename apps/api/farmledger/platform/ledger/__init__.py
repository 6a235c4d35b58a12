from farmledger.platform.ledger import guards  # noqa: F401
