"""Environment settings and typed custodian connection configuration."""
