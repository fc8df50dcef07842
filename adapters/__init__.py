"""
Custodian adapters.

Each adapter implements the same capability set for one custodian:
configuration validation, staged connection tests, feed retrieval,
order submission, document retrieval and health checks.
"""

import time

from adapters.base import CustodianAdapter
from adapters.hybrid_adapter import HybridAdapter
from adapters.rest_adapter import RestAdapter
from adapters.sftp_adapter import SftpAdapter
from config.settings import settings as default_settings
from core.models import CustodianType
from integrations.sftp_client import SFTPClient


def build_adapter_registry(
    token_cache=None,
    settings=default_settings,
    session=None,
    sftp_factory=SFTPClient,
    download_dir=None,
    sleep=time.sleep,
):
    """Return the adapter instance for every supported custodian type."""
    common = {"settings": settings, "sleep": sleep}
    return {
        CustodianType.SCHWAB: RestAdapter(token_cache=token_cache, session=session, **common),
        CustodianType.FIDELITY: SftpAdapter(sftp_factory=sftp_factory, download_dir=download_dir, **common),
        CustodianType.PERSHING: HybridAdapter(
            token_cache=token_cache,
            session=session,
            sftp_factory=sftp_factory,
            download_dir=download_dir,
            **common,
        ),
    }


__all__ = ["CustodianAdapter", "RestAdapter", "SftpAdapter", "HybridAdapter", "build_adapter_registry"]
