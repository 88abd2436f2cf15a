"""
ACME client for certificate issuance.

Defines the contract the scheduler consumes and a Let's Encrypt
implementation built on the acme library. The client performs exactly
one issuance per call; retries and backoff belong to the scheduler.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import josepy as jose
from acme import challenges, client, messages
from acme import errors as acme_errors
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certkeeper import __version__
from certkeeper.core.database import Database
from certkeeper.core.errors import AcmeError, FailureKind
from certkeeper.models.certificate import IssuedCertificate

logger = logging.getLogger(__name__)

# ACME problem types (RFC 8555 section 6.7) meaning the domain could not be validated
VALIDATION_PROBLEMS = {
    "unauthorized",
    "connection",
    "dns",
    "incorrectResponse",
    "caa",
    "tls",
}
# Transient server-side problems
TRANSIENT_PROBLEMS = {"serverInternal", "badNonce"}


class AcmeClient(Protocol):
    """Domain validation and certificate issuance by a certificate authority."""

    async def request(self, domains: list[str]) -> IssuedCertificate:
        """
        Validate the domains and obtain a certificate covering all of them.

        Raises:
            AcmeError: with kind validation_failed, rate_limited, network_error or ca_rejected
        """
        ...


def classify_acme_error(exc: BaseException) -> AcmeError:
    """Map an acme library or transport exception onto an AcmeError kind."""
    if isinstance(exc, AcmeError):
        return exc

    if isinstance(exc, messages.Error):
        code = exc.code
        detail = exc.detail or exc.title or str(exc)
        if code == "rateLimited":
            return AcmeError(FailureKind.RATE_LIMITED, detail, suggestion="Wait for the CA rate limit window to pass")
        if code in VALIDATION_PROBLEMS:
            return AcmeError(
                FailureKind.VALIDATION_FAILED,
                detail,
                suggestion="Check that every domain points to this server and port 80 is reachable",
            )
        if code in TRANSIENT_PROBLEMS:
            return AcmeError(FailureKind.NETWORK_ERROR, detail)
        return AcmeError(FailureKind.CA_REJECTED, detail, suggestion="The CA refused the request as submitted")

    if isinstance(exc, acme_errors.IssuanceError):
        return classify_acme_error(exc.error)

    if isinstance(exc, acme_errors.ValidationError):
        return AcmeError(
            FailureKind.VALIDATION_FAILED,
            f"Authorization failed: {exc}",
            suggestion="Check that every domain points to this server and port 80 is reachable",
        )

    if isinstance(exc, (acme_errors.TimeoutError, acme_errors.BadNonce, acme_errors.MissingNonce)):
        return AcmeError(FailureKind.NETWORK_ERROR, f"CA exchange failed: {exc}")

    if isinstance(exc, (OSError, asyncio.TimeoutError, TimeoutError)):
        # requests' exceptions derive from OSError
        return AcmeError(FailureKind.NETWORK_ERROR, f"Cannot reach the CA: {exc}")

    if isinstance(exc, acme_errors.Error):
        return AcmeError(FailureKind.CA_REJECTED, f"CA exchange failed: {exc}")

    raise TypeError(f"Cannot classify {type(exc).__name__} as an ACME error")


def make_key_and_csr(domains: list[str], key_size: int = 2048) -> tuple[bytes, bytes]:
    """
    Create a private key and a CSR for the given domains.

    Returns:
        Tuple of (private_key_pem, csr_pem)
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    builder = x509.CertificateSigningRequestBuilder()
    builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]), critical=False
    )
    csr = builder.sign(private_key, hashes.SHA256())

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem, csr.public_bytes(serialization.Encoding.PEM)


def split_fullchain(fullchain_pem: bytes) -> tuple[bytes, bytes]:
    """Split a PEM full chain into (leaf certificate, intermediate chain)."""
    certs = fullchain_pem.split(b"-----END CERTIFICATE-----")
    cert_pem = certs[0].strip() + b"\n-----END CERTIFICATE-----\n"
    chain_pem = b"-----END CERTIFICATE-----".join(certs[1:])
    if chain_pem.strip():
        chain_pem = chain_pem.strip() + b"\n"
    else:
        chain_pem = b""
    return cert_pem, chain_pem


class LetsEncryptAcmeClient:
    """
    ACME v2 client using HTTP-01 validation.

    Challenge responses are written to a directory the web server
    serves at /.well-known/acme-challenge/. The account key is kept in
    the state database and reused across restarts.
    """

    def __init__(
        self,
        db: Database,
        directory_url: str,
        challenge_dir: str,
        email: str = "",
        key_size: int = 2048,
        finalize_timeout: int = 180,
    ):
        self.db = db
        self.directory_url = directory_url
        self.email = email
        self.key_size = key_size
        self.finalize_timeout = finalize_timeout
        self._challenge_dir = Path(challenge_dir)
        self._client: client.ClientV2 | None = None
        self._account_key: jose.JWKRSA | None = None
        self._registered = False
        # One account setup at a time, or concurrent renewals register duplicate accounts
        self._setup_lock = asyncio.Lock()

    def reset(self) -> None:
        """Reset client state. Call after failures to prevent stale client reuse."""
        logger.info("Resetting ACME client state")
        self._client = None
        self._registered = False

    async def request(self, domains: list[str]) -> IssuedCertificate:
        try:
            return await self._issue(domains)
        except (messages.Error, acme_errors.Error, OSError) as e:
            error = classify_acme_error(e)
            if error.kind == FailureKind.NETWORK_ERROR:
                self.reset()
            logger.warning(f"ACME request for {domains[0]} failed: {error}")
            raise error from e

    async def _load_account_key(self) -> jose.JWKRSA | None:
        row = await self.db.fetch_one(
            "SELECT * FROM acme_accounts WHERE directory_url = ? ORDER BY created_at DESC LIMIT 1",
            (self.directory_url,),
        )
        if not row:
            return None
        logger.info("Loading ACME account key from database")
        private_key = serialization.load_pem_private_key(row["private_key_pem"].encode("utf-8"), password=None)
        return jose.JWKRSA(key=private_key)

    async def _save_account(self, account_url: str | None) -> None:
        private_key_pem = self._account_key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        existing = await self.db.fetch_one(
            "SELECT id FROM acme_accounts WHERE directory_url = ? LIMIT 1", (self.directory_url,)
        )
        if existing:
            await self.db.execute(
                "UPDATE acme_accounts SET email = ?, account_url = ?, private_key_pem = ? WHERE id = ?",
                (self.email or None, account_url, private_key_pem, existing["id"]),
            )
        else:
            await self.db.insert(
                "acme_accounts",
                {
                    "id": f"acme-{uuid.uuid4().hex[:12]}",
                    "email": self.email or None,
                    "directory_url": self.directory_url,
                    "account_url": account_url,
                    "private_key_pem": private_key_pem,
                },
            )
        logger.info(f"Saved ACME account for {self.directory_url}")

    async def _get_client(self) -> client.ClientV2:
        """Get or create a registered ACME client."""
        if self._client and self._registered:
            return self._client

        async with self._setup_lock:
            if self._client and self._registered:
                return self._client
            return await self._register()

    async def _register(self) -> client.ClientV2:
        if self._account_key is None:
            self._account_key = await self._load_account_key()
        is_new_key = self._account_key is None
        if is_new_key:
            logger.info("Generating new ACME account key")
            self._account_key = jose.JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=2048))

        account_key = self._account_key
        email = self.email

        def create_and_register():
            net = client.ClientNetwork(account_key, user_agent=f"certkeeper/{__version__}")
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            acme_client = client.ClientV2(directory, net=net)

            regr = messages.NewRegistration.from_data(email=email or None, terms_of_service_agreed=True)
            try:
                account = acme_client.new_account(regr)
                logger.info("Created new ACME account")
            except acme_errors.ConflictError as conflict:
                # Account already exists for this key
                existing = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                account = acme_client.query_registration(existing)
            return acme_client, account

        acme_client, account = await asyncio.to_thread(create_and_register)
        if is_new_key:
            await self._save_account(getattr(account, "uri", None))

        self._client = acme_client
        self._registered = True
        return acme_client

    def _write_challenge(self, token: str, validation: str) -> Path:
        self._challenge_dir.mkdir(parents=True, exist_ok=True)
        challenge_path = self._challenge_dir / token
        challenge_path.write_text(validation)
        logger.debug(f"Created challenge file at {challenge_path}")
        return challenge_path

    def _select_http01(self, authz: messages.AuthorizationResource) -> messages.ChallengeBody:
        for challb in authz.body.challenges:
            if isinstance(challb.chall, challenges.HTTP01):
                return challb
        raise AcmeError(
            FailureKind.CA_REJECTED,
            f"CA offered no HTTP-01 challenge for {authz.body.identifier.value}",
        )

    async def _issue(self, domains: list[str]) -> IssuedCertificate:
        acme_client = await self._get_client()
        key_pem, csr_pem = make_key_and_csr(domains, self.key_size)

        order = await asyncio.to_thread(acme_client.new_order, csr_pem)
        logger.info(f"Created ACME order for domains: {domains}")

        challenge_files = []
        try:
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue
                challb = self._select_http01(authz)
                response, validation = challb.response_and_validation(acme_client.net.key)
                challenge_files.append(self._write_challenge(challb.chall.encode("token"), validation))
                await asyncio.to_thread(acme_client.answer_challenge, challb, response)

            # acme compares deadlines against naive local time
            deadline = datetime.now() + timedelta(seconds=self.finalize_timeout)
            finalized = await asyncio.to_thread(acme_client.poll_and_finalize, order, deadline)
        finally:
            for path in challenge_files:
                path.unlink(missing_ok=True)

        cert_pem, chain_pem = split_fullchain(finalized.fullchain_pem.encode("utf-8"))
        logger.info(f"Obtained certificate for {domains}")
        return IssuedCertificate(domains=domains, cert_pem=cert_pem, chain_pem=chain_pem, key_pem=key_pem)
