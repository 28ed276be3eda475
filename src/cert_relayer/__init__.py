"""
cert_relayer — signature-authorized certificate issuance relayer.

Builds EIP-712 typed-data digests for certificate records, verifies the
issuing university's signature, and relays the signed record to the
CertificateAuthority contract, debiting one issuance credit per certificate.

Built on the Railway-Oriented Programming (ROP) primitives in
cert_relayer.railway for explicit, composable error handling.
"""

__version__ = "0.1.0"
