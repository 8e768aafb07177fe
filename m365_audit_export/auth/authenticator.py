"""
Authentication module: acquires a Graph bearer token through MSAL.
Supports certificate and client-secret app-only auth, device code, and a
pre-issued token (M365_ACCESS_TOKEN) for callers that manage tokens themselves.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, pkcs12
import msal

from ..config import AuthConfig, CertificateAuth

logger = logging.getLogger("m365_audit_export.auth")

APP_SCOPES = ["https://graph.microsoft.com/.default"]
AUTHORITY = "https://login.microsoftonline.com/{tenant_id}"


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


class Authenticator:
    """Resolves an access token for the configured auth mode."""

    def __init__(self, config: AuthConfig):
        self.config = config
        self._access_token: Optional[str] = None

    def acquire_token(self) -> str:
        mode = self.config.mode
        if mode == "token":
            token = self.config.access_token or os.environ.get("M365_ACCESS_TOKEN", "")
            if not token:
                raise AuthenticationError("Token mode selected but no access token was provided.")
            self._access_token = token
        elif mode == "certificate":
            self._access_token = self._acquire_certificate_token()
        elif mode == "secret":
            self._access_token = self._acquire_secret_token()
        elif mode == "delegated":
            self._access_token = self._acquire_delegated_token()
        else:
            raise AuthenticationError(f"Unknown auth mode: {mode}")
        return self._access_token

    def _acquire_certificate_token(self) -> str:
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        logger.info("Authenticating with certificate-based app credentials...")
        credential = _load_certificate_credential(cert_config)
        app = msal.ConfidentialClientApplication(
            client_id=cert_config.client_id,
            authority=AUTHORITY.format(tenant_id=cert_config.tenant_id),
            client_credential=credential,
        )
        return _token_from(app.acquire_token_for_client(scopes=APP_SCOPES), "Certificate")

    def _acquire_secret_token(self) -> str:
        secret_config = self.config.secret
        if not secret_config:
            raise AuthenticationError("Client secret auth config not provided.")
        secret = secret_config.client_secret or os.environ.get("M365_CLIENT_SECRET", "")
        if not secret:
            raise AuthenticationError("No client secret set (config or M365_CLIENT_SECRET).")

        logger.info("Authenticating with client secret...")
        app = msal.ConfidentialClientApplication(
            client_id=secret_config.client_id,
            authority=AUTHORITY.format(tenant_id=secret_config.tenant_id),
            client_credential=secret,
        )
        return _token_from(app.acquire_token_for_client(scopes=APP_SCOPES), "Client secret")

    def _acquire_delegated_token(self) -> str:
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        logger.info("Initiating device code authentication flow...")
        app = msal.PublicClientApplication(
            client_id=deleg_config.client_id,
            authority=AUTHORITY.format(tenant_id=deleg_config.tenant_id),
        )
        flow = app.initiate_device_flow(scopes=deleg_config.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )
        print(f"\n  {flow['message']}\n")
        return _token_from(app.acquire_token_by_device_flow(flow), "Delegated")

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token


def _load_certificate_credential(cert_config: CertificateAuth) -> dict:
    """Read a base64-encoded PFX and return the MSAL thumbprint/private key credential."""
    password = cert_config.certificate_password or os.environ.get("M365_CERT_PASSWORD", "")
    if not password:
        password = getpass.getpass("Enter the certificate password: ")

    try:
        with open(cert_config.certificate_path, "r") as f:
            cert_bytes = base64.b64decode(f.read().strip())
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password.encode("utf-8") if password else None
        )
    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_config.certificate_path}")
    except (ValueError, TypeError) as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError("Certificate file has no private key or certificate.")

    thumbprint = certificate.fingerprint(SHA1()).hex()
    logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")
    return {
        "thumbprint": thumbprint,
        "private_key": private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8"),
    }


def _token_from(result: dict, label: str) -> str:
    if "access_token" in result:
        logger.info(f"{label} authentication successful.")
        return result["access_token"]
    error = result.get("error_description", result.get("error", "Unknown"))
    raise AuthenticationError(f"{label} auth failed: {error}")
