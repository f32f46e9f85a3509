"""
Provider credentials — the secret bundle a user logs in with.

Secret fields are ``SecretStr`` so that ``repr()``, ``str()`` and log
formatting never reveal them.  Call ``get_secret_value()`` only where
the value is written to the secrets artifact.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    TypeAdapter,
)
from pydantic import ValidationError as PydanticValidationError

from cloudforge.core.errors import ValidationError


class AwsCredentials(BaseModel):
    """Access key pair (optionally with a session token) and region."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    provider: Literal["aws"] = "aws"
    access_key: SecretStr = Field(validation_alias=AliasChoices("access_key", "accessKey"))
    secret_key: SecretStr = Field(validation_alias=AliasChoices("secret_key", "secretKey"))
    token: SecretStr | None = Field(
        None, validation_alias=AliasChoices("token", "sessionToken", "session_token"),
    )
    region: str

    def secret_values(self) -> list[str]:
        values = [self.access_key.get_secret_value(), self.secret_key.get_secret_value()]
        if self.token is not None:
            values.append(self.token.get_secret_value())
        return values


class AzureCredentials(BaseModel):
    """Service principal credentials and default location."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    provider: Literal["azure"] = "azure"
    subscription_id: SecretStr = Field(
        validation_alias=AliasChoices("subscription_id", "subscriptionId"),
    )
    client_id: SecretStr = Field(validation_alias=AliasChoices("client_id", "clientId"))
    client_secret: SecretStr = Field(
        validation_alias=AliasChoices("client_secret", "clientSecret"),
    )
    tenant_id: SecretStr = Field(validation_alias=AliasChoices("tenant_id", "tenantId"))
    location: str = "East US"

    @property
    def region(self) -> str:
        return self.location

    def secret_values(self) -> list[str]:
        return [
            self.subscription_id.get_secret_value(),
            self.client_id.get_secret_value(),
            self.client_secret.get_secret_value(),
            self.tenant_id.get_secret_value(),
        ]


ProviderCredentials = Annotated[
    Union[AwsCredentials, AzureCredentials],
    Field(discriminator="provider"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(ProviderCredentials)

SUPPORTED_PROVIDERS = ("aws", "azure")


def parse_credentials(data: Any, provider: str | None = None) -> AwsCredentials | AzureCredentials:
    """Validate a credentials payload.

    Args:
        data: Mapping from the login form or a credentials file.
        provider: Forces the provider when the payload does not carry one
            (the legacy ``/api/aws/credentials`` endpoint).

    Raises:
        ValidationError: Missing or malformed fields.
    """
    if not isinstance(data, dict):
        raise ValidationError("credentials must be an object")
    payload = dict(data)
    if provider is not None:
        payload["provider"] = provider
    try:
        return _adapter.validate_python(payload)
    except PydanticValidationError as e:
        problems = [
            f"credentials.{'.'.join(str(p) for p in err['loc']) or '?'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(
            "Invalid credentials: " + "; ".join(problems), problems=problems,
        ) from e


def dump_credentials(credentials: AwsCredentials | AzureCredentials) -> dict[str, Any]:
    """Plain dict with secrets revealed — only for encrypted storage."""
    out: dict[str, Any] = {}
    for key, value in credentials.model_dump().items():
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        out[key] = value
    return out
