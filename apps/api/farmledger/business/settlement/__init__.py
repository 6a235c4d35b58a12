from farmledger.business.settlement import guards  # noqa: F401
