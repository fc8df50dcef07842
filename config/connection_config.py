"""
Typed connection configuration.

Persisted and submitted connection configuration arrives as camelCase JSON.
It is validated once at the boundary into these models; everything
downstream works with attributes instead of loose dictionaries.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from core.errors import ConfigurationError
from core.models import ConnectionType, CustodianType

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Credentials(_CamelModel):
    api_key: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = None
    token_endpoint: Optional[str] = None
    scope: Optional[str] = None


SECRET_CREDENTIAL_FIELDS = ("api_key", "client_secret", "password", "passphrase")


class AuthenticationConfig(_CamelModel):
    type: Literal["OAUTH2", "API_KEY", "BASIC", "SSH_KEY", "CERTIFICATE"] = "OAUTH2"
    credentials: Credentials = Field(default_factory=Credentials)


class EndpointConfig(_CamelModel):
    positions: Optional[str] = None
    transactions: Optional[str] = None
    cash_balances: Optional[str] = None
    corporate_actions: Optional[str] = None
    settlements: Optional[str] = None
    order_submission: Optional[str] = None
    document_retrieval: Optional[str] = None
    account_information: Optional[str] = None
    health: Optional[str] = None


class FileTransferConfig(_CamelModel):
    protocol: Literal["SFTP", "FTP"] = "SFTP"
    host: Optional[str] = None
    port: int = 22
    directory: Optional[str] = None
    documents_directory: Optional[str] = None
    file_pattern: Optional[str] = None


class FieldMapping(_CamelModel):
    source_field: str
    target_field: str
    data_type: Literal["string", "number", "date", "boolean"] = "string"
    required: bool = False


class DataMappingConfig(_CamelModel):
    position_mapping: List[FieldMapping] = Field(default_factory=list)
    transaction_mapping: List[FieldMapping] = Field(default_factory=list)
    cash_balance_mapping: List[FieldMapping] = Field(default_factory=list)
    corporate_action_mapping: List[FieldMapping] = Field(default_factory=list)
    date_format: str = "%Y-%m-%d"


class ConnectionConfig(_CamelModel):
    base_url: Optional[str] = None
    api_version: Optional[str] = None
    authentication: AuthenticationConfig = Field(default_factory=AuthenticationConfig)
    endpoints: EndpointConfig = Field(default_factory=EndpointConfig)
    file_transfer: Optional[FileTransferConfig] = None
    data_mapping: DataMappingConfig = Field(default_factory=DataMappingConfig)
    timeout_seconds: Optional[float] = None


class RateLimit(_CamelModel):
    requests_per_minute: int = 60
    burst: int = 10


class CustodianConnectionRequest(_CamelModel):
    custodian_type: CustodianType
    custodian_name: str
    custodian_code: str
    connection_type: ConnectionType
    connection_config: ConnectionConfig
    supported_features: List[str] = Field(default_factory=list)
    rate_limits: Optional[RateLimit] = None


def parse_connection_config(payload: Dict[str, Any]) -> ConnectionConfig:
    """Validate a raw configuration document."""
    try:
        return ConnectionConfig.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Invalid connection configuration: {e.error_count()} error(s)")
        raise ConfigurationError(f"Invalid connection configuration: {e}") from e


def parse_connection_request(payload: Dict[str, Any]) -> CustodianConnectionRequest:
    """Validate a connection creation request."""
    try:
        return CustodianConnectionRequest.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Invalid connection request: {e.error_count()} error(s)")
        raise ConfigurationError(f"Invalid connection request: {e}") from e
