"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup

The signing domain is validated here as a whole: a missing contract address
or a non-positive chain id fails startup, so no digest is ever computed
against a partial domain.

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated via env_nested_delimiter="__", so DOMAIN__VERIFYING_CONTRACT
maps to domain.verifying_contract, LEDGER__RPC_URL to ledger.rpc_url, etc.
"""

from __future__ import annotations

from pathlib import Path

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cert_relayer.domain.models import DomainDescriptor

_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


def _checksum(value: str) -> str:
    if not is_address(value):
        raise ValueError(f"Not a valid 20-byte address: {value!r}")
    return to_checksum_address(value)


class DomainSettings(BaseModel):
    """
    EIP-712 domain of the deployed CertificateAuthority contract.

    Must match the contract's constructor arguments exactly. Redeploying the
    contract means updating verifying_contract; changing the version string
    invalidates every outstanding signature.
    """

    name: str = Field(default="CertificateAuthority", min_length=1)
    version: str = Field(default="1", min_length=1)
    chain_id: int = Field(default=11155111, gt=0, description="Sepolia by default")
    verifying_contract: str = Field(description="CertificateAuthority contract address")

    @field_validator("verifying_contract")
    @classmethod
    def validate_contract(cls, value: str) -> str:
        return _checksum(value)

    def to_descriptor(self) -> DomainDescriptor:
        return DomainDescriptor(
            name=self.name,
            version=self.version,
            chain_id=self.chain_id,
            verifying_contract=self.verifying_contract,
        )


class LedgerSettings(BaseModel):
    """JSON-RPC endpoint, relayer account and contract addresses."""

    rpc_url: str = Field(description="Ethereum JSON-RPC endpoint")
    relayer_private_key: SecretStr = Field(description="Key of the account paying gas")
    credit_token_address: str = Field(description="CertUniToken contract address")
    receipt_timeout_seconds: int = Field(default=120, ge=1)
    verify_domain_on_startup: bool = Field(
        default=True,
        description="Compare the local domain separator with getDomainSeparator()",
    )

    @field_validator("credit_token_address")
    @classmethod
    def validate_token(cls, value: str) -> str:
        return _checksum(value)


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components. The DSN wins when both are provided.
    """

    dsn: SecretStr | None = Field(default=None)
    host: str | None = Field(default=None)
    port: int = Field(default=5432, ge=1, le=65535)
    name: str | None = Field(default=None)
    username: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class CustodianSettings(BaseModel):
    """Optional remote signing agent used by automated issuance."""

    url: str | None = Field(default=None, description="Signing agent endpoint")
    timeout_seconds: int = Field(default=300, ge=1)


class IssuanceSettings(BaseModel):
    """Credit economics and freshness rules for signed records."""

    free_credit_grant: int = Field(default=5, ge=1)
    credits_per_certificate: int = Field(default=1, ge=1)
    max_signature_age_seconds: int = Field(
        default=3600, ge=60, description="Oldest issueDate accepted at submission"
    )
    clock_skew_seconds: int = Field(default=300, ge=0)


class ReconcilerSettings(BaseModel):
    """
    Reconciliation job schedule (5-field cron).

    The job confirms submitted issuances and converges credit token balances
    with the credit store.
    """

    cron: str = Field(default="*/5 * * * *")
    run_on_startup: bool = Field(default=True)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first): environment, .env file, defaults.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    domain: DomainSettings
    ledger: LedgerSettings
    database: DatabaseSettings
    custodian: CustodianSettings = Field(default_factory=CustodianSettings)
    issuance: IssuanceSettings = Field(default_factory=IssuanceSettings)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)

    http_timeout_seconds: int = Field(default=60, ge=1)
    log_level: str = Field(default="INFO")
