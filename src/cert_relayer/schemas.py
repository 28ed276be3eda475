"""
Request bodies for the HTTP API.

Field names follow the wallet-facing JSON (camelCase, `metadataURI`), so a
`certificateData` object returned by /certificates/prepare can be posted back
to /certificates/issue unchanged. Only shapes are checked here; values are
validated by the domain constructors.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PrepareCertificateBody(_CamelModel):
    university_address: str
    student_name: str
    student_email: str
    certificate_name: str
    expiration_date: int = Field(default=0, ge=0)
    metadata_uri: str = Field(default="", alias="metadataURI")


class CertificateDataBody(_CamelModel):
    cert_id: str
    university: str
    certificate_name: str
    person_name_hash: str
    email_hash: str
    issue_date: int
    expiration_date: int = 0
    metadata_uri: str = Field(default="", alias="metadataURI")


class SignatureParts(BaseModel):
    v: int
    r: str
    s: str


class IssueCertificateBody(_CamelModel):
    certificate_data: CertificateDataBody
    signature: str | SignatureParts


class ClaimCreditsBody(_CamelModel):
    university_address: str
