"""Clients for external systems: SFTP, custodian REST APIs and MongoDB."""
