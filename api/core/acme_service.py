"""
ACME service for obtaining certificates from the authority.

Provides the ACME protocol operations (account, order, HTTP-01 challenge,
finalization) using the acme library, and ``issue()`` which runs them end
to end for a single domain name.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import josepy as jose
from acme import challenges, client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from config import settings
from core.cert_helpers import (
    PemParseError,
    parse_certificate,
    serialize_private_key,
    split_leaf_and_chain,
    validate_certificate_key_match,
)
from core.challenge_publisher import ChallengePublisher, get_challenge_publisher
from models.certificate import ACMEAccount, CertificateProvider, IssuedCertificate

logger = logging.getLogger(__name__)

USER_AGENT = "certflow/1.0"

# Problem codes meaning the account key is unknown or no longer accepted
ACCOUNT_ERROR_CODES = ("accountDoesNotExist", "unauthorized")


class AuthorityError(Exception):
    """Base exception for ACME operations."""

    error_code = "authority_error"

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class ChallengeUnavailableError(AuthorityError):
    """The authority offered no HTTP-01 challenge."""

    error_code = "challenge_unavailable"


class ChallengeFailedError(AuthorityError):
    """An authorization became invalid or did not validate in time."""

    error_code = "challenge_failed"


class OrderError(AuthorityError):
    """Order creation or finalization failed."""

    error_code = "order_error"


class AuthorityTimeoutError(AuthorityError):
    """Issuance did not complete within the caller's timeout."""

    error_code = "authority_timeout"


class ACMEService:
    """
    ACME protocol operations against one directory.

    Handles account registration, certificate orders, and HTTP-01
    challenge publication. Blocking acme calls run in worker threads.
    """

    def __init__(
        self,
        publisher: ChallengePublisher | None = None,
        directory_url: str | None = None,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        finalize_timeout: float | None = None,
    ):
        self.publisher = publisher or get_challenge_publisher()
        self._directory_url = directory_url
        self.poll_interval = settings.acme_poll_interval if poll_interval is None else poll_interval
        self.poll_timeout = settings.acme_poll_timeout if poll_timeout is None else poll_timeout
        self.finalize_timeout = settings.acme_finalize_timeout if finalize_timeout is None else finalize_timeout

        self._client: ClientV2 | None = None
        self._account_key: jose.JWK | None = None
        self._account_registered = False
        self._key_generated = False
        self._client_lock = asyncio.Lock()
        self._account_lock = asyncio.Lock()
        self._account_loader = None
        self._account_saver = None

    def set_account_loader(self, loader):
        """Set async callback to load a saved ACME account from persistent storage."""
        self._account_loader = loader

    def set_account_saver(self, saver):
        """Set async callback to persist a newly registered ACME account."""
        self._account_saver = saver

    def reset(self):
        """Reset client state. Call after account failures so the next attempt starts fresh."""
        logger.info("Resetting ACME client state")
        self._client = None
        self._account_key = None
        self._account_registered = False
        self._key_generated = False

    def _reset_if_current(self, acme_client: ClientV2) -> None:
        """Reset only if no other issuance has replaced the client in the meantime."""
        if acme_client is self._client:
            self.reset()

    @property
    def directory_url(self) -> str:
        """ACME directory URL in use."""
        return self._directory_url or settings.active_directory_url

    async def _get_or_create_account_key(self) -> jose.JWK:
        """Get existing account key, load from storage, or generate a new one."""
        if self._account_key:
            return self._account_key

        # Try loading saved account from persistent storage
        if self._account_loader:
            try:
                saved_account = await self._account_loader()
            except Exception as e:
                logger.warning(f"Failed to load saved ACME account: {e}")
                saved_account = None
            if saved_account:
                logger.info("Loading ACME account from database")
                private_key = serialization.load_pem_private_key(
                    saved_account.private_key_pem.encode("utf-8"), password=None
                )
                self._account_key = jose.JWKRSA(key=private_key)
                return self._account_key

        # Generate new RSA key for account
        logger.info("Generating new ACME account key")
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self._account_key = jose.JWKRSA(key=private_key)
        self._key_generated = True
        return self._account_key

    async def _get_client(self) -> ClientV2:
        """Get or create ACME client."""
        async with self._client_lock:
            if self._client:
                return self._client

            account_key = await self._get_or_create_account_key()
            directory_url = self.directory_url

            # Create client in thread pool (blocking network call)
            def create_client():
                net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
                directory = messages.Directory.from_json(net.get(directory_url).json())
                return ClientV2(directory, net=net)

            try:
                self._client = await asyncio.to_thread(create_client)
            except Exception as e:
                raise AuthorityError(
                    f"Failed to reach ACME directory {directory_url}: {e}",
                    suggestion="Check network connectivity to the certificate authority",
                ) from e
            return self._client

    async def register_account(self, email: str | None = None) -> ACMEAccount:
        """
        Register a new ACME account or retrieve existing one.

        Args:
            email: Email for account registration (optional but recommended)

        Returns:
            ACMEAccount with registration details
        """
        acme_client = await self._get_client()
        account_key = await self._get_or_create_account_key()

        email_to_use = email or settings.acme_account_email or None

        def do_registration():
            regr = messages.NewRegistration.from_data(terms_of_service_agreed=True)
            if email_to_use:
                regr = regr.update(contact=(f"mailto:{email_to_use}",))

            try:
                account_resource = acme_client.new_account(regr)
                logger.info("Created new ACME account")
                return account_resource
            except acme_errors.ConflictError as conflict:
                # Key already registered; the conflict carries the account URL
                logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                existing_regr = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                return acme_client.query_registration(existing_regr)

        try:
            account_resource = await asyncio.to_thread(do_registration)
        except acme_errors.Error as e:
            raise AuthorityError(
                f"Failed to register ACME account: {e}",
                suggestion="Check ACME_ACCOUNT_EMAIL and the directory terms of service",
            ) from e

        return ACMEAccount(
            email=email_to_use,
            directory_url=self.directory_url,
            account_url=getattr(account_resource, "uri", None),
            private_key_pem=serialize_private_key(account_key.key),
        )

    async def ensure_account(self) -> ClientV2:
        """
        Register the account once per client lifetime, persisting new keys.

        Returns the registered client. Concurrent issuances share it and
        each keeps its own reference until it finishes.
        """
        async with self._account_lock:
            if self._account_registered and self._client:
                return self._client

            try:
                account = await self.register_account()
                if self._key_generated and self._account_saver:
                    await self._account_saver(account)
                    self._key_generated = False
            except AuthorityError:
                self.reset()
                raise
            self._account_registered = True
            return self._client

    def _make_key_and_csr(self, domain_name: str) -> tuple[str, bytes]:
        """
        Create the certificate key pair and a CSR for exactly one name.

        Returns:
            Tuple of (private_key_pem, csr_pem)
        """
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        builder = x509.CertificateSigningRequestBuilder()
        builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain_name)]))
        builder = builder.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain_name)]), critical=False)
        csr = builder.sign(private_key, hashes.SHA256())

        return serialize_private_key(private_key), csr.public_bytes(serialization.Encoding.PEM)

    async def create_order(
        self, acme_client: ClientV2, domain_name: str, csr_pem: bytes
    ) -> messages.OrderResource:
        """
        Create a new certificate order for the CSR.

        An authority that no longer knows the account resets the shared
        client so the next issuance registers again.
        """
        try:
            order = await asyncio.to_thread(acme_client.new_order, csr_pem)
        except Exception as e:
            if isinstance(e, messages.Error) and e.code in ACCOUNT_ERROR_CODES:
                logger.warning(f"ACME account rejected while ordering for {domain_name}: {e}")
                self._reset_if_current(acme_client)
            raise OrderError(
                f"Failed to create order: {e}",
                domain=domain_name,
                suggestion="Check that the domain is valid and resolvable",
            ) from e

        logger.info(f"Created ACME order for {domain_name}")
        return order

    async def select_http_challenge(
        self, acme_client: ClientV2, authorization: messages.AuthorizationResource, domain_name: str
    ) -> tuple[messages.ChallengeBody, str]:
        """
        Extract HTTP-01 challenge from authorization.

        Returns:
            Tuple of (challenge body, key_authorization)
        """
        for challenge in authorization.body.challenges:
            if isinstance(challenge.chall, challenges.HTTP01):
                key_authz = challenge.chall.key_authorization(acme_client.net.key)
                return challenge, key_authz

        raise ChallengeUnavailableError(
            "No HTTP-01 challenge offered",
            domain=domain_name,
            suggestion="The authority may only support DNS-01 challenges for this name",
        )

    async def respond_to_challenge(
        self, acme_client: ClientV2, challenge: messages.ChallengeBody, domain_name: str
    ):
        """Notify the authority that the challenge artifact is published."""

        def do_respond():
            return acme_client.answer_challenge(challenge, challenge.chall.response(acme_client.net.key))

        try:
            response = await asyncio.to_thread(do_respond)
        except Exception as e:
            raise ChallengeFailedError(
                f"Failed to respond to challenge: {e}",
                domain=domain_name,
                suggestion="Ensure http://<domain>/.well-known/acme-challenge/ routes to this service",
            ) from e

        logger.info(f"Responded to challenge for {domain_name}")
        return response

    async def poll_authorization(
        self, acme_client: ClientV2, authorization: messages.AuthorizationResource, domain_name: str
    ) -> messages.AuthorizationResource:
        """
        Poll an authorization until it is valid.

        Raises:
            ChallengeFailedError: If it becomes invalid or the poll deadline passes
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout

        while loop.time() < deadline:
            try:
                authorization, _ = await asyncio.to_thread(acme_client.poll, authorization)
            except acme_errors.Error as e:
                logger.warning(f"Poll error for {domain_name}: {e}")
            else:
                status = authorization.body.status
                if status == messages.STATUS_VALID:
                    logger.info(f"Authorization valid for {domain_name}")
                    return authorization
                if status == messages.STATUS_INVALID:
                    raise ChallengeFailedError(
                        f"Authorization failed for {domain_name}",
                        domain=domain_name,
                        suggestion="Check that the domain points to this server and port 80 is accessible",
                    )

            await asyncio.sleep(self.poll_interval)

        raise ChallengeFailedError(
            f"Authorization timed out after {self.poll_timeout} seconds",
            domain=domain_name,
            suggestion="Check domain accessibility from the internet",
        )

    async def finalize_order(self, acme_client: ClientV2, order: messages.OrderResource, domain_name: str) -> str:
        """
        Finalize the order and download the certificate.

        Returns:
            Full chain PEM (leaf first)
        """
        # acme compares the deadline against local naive time
        deadline = datetime.now() + timedelta(seconds=self.finalize_timeout)

        try:
            finalized = await asyncio.to_thread(acme_client.finalize_order, order, deadline)
        except Exception as e:
            raise OrderError(
                f"Failed to finalize order: {e}",
                domain=domain_name,
                suggestion="Check that all authorizations completed successfully",
            ) from e

        return finalized.fullchain_pem

    async def issue(self, domain_name: str) -> IssuedCertificate:
        """
        Obtain a certificate for a single domain name.

        Runs account setup, order, HTTP-01 challenge, polling and
        finalization. Published challenge artifacts are removed on every
        exit path, including cancellation by a caller's timeout.

        The registered client is taken once and used for every step, so
        concurrent issuances are unaffected when one of them fails. The
        shared client is reset only when the account itself is broken.

        Raises:
            ChallengeUnavailableError: No HTTP-01 challenge was offered
            ChallengeFailedError: Validation failed or timed out
            OrderError: Order creation or finalization failed
            AuthorityError: Any other authority failure
        """
        if domain_name.startswith("*."):
            raise OrderError(
                f"Wildcard names are not supported: {domain_name}",
                domain=domain_name,
                suggestion="Wildcards require DNS-01; request the exact name instead",
            )

        published_tokens: list[str] = []
        acme_client = None
        try:
            acme_client = await self.ensure_account()

            private_key_pem, csr_pem = await asyncio.to_thread(self._make_key_and_csr, domain_name)
            order = await self.create_order(acme_client, domain_name, csr_pem)

            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue

                challenge, key_authz = await self.select_http_challenge(acme_client, authz, domain_name)
                token = challenge.chall.encode("token")

                # Artifact must be reachable before the authority is told to validate
                await self.publisher.publish(token, key_authz)
                published_tokens.append(token)

                await self.respond_to_challenge(acme_client, challenge, domain_name)
                await self.poll_authorization(acme_client, authz, domain_name)

            fullchain_pem = await self.finalize_order(acme_client, order, domain_name)

            try:
                leaf_pem, chain_pem = split_leaf_and_chain(fullchain_pem)
                info = parse_certificate(leaf_pem)
                key_matches = validate_certificate_key_match(leaf_pem, private_key_pem)
            except (PemParseError, ValueError) as e:
                raise OrderError(
                    f"Authority returned an unreadable certificate: {e}",
                    domain=domain_name,
                ) from e
            if not key_matches:
                raise OrderError(
                    "Authority returned a certificate that does not match the requested key",
                    domain=domain_name,
                )

        except AuthorityError:
            raise
        except Exception as e:
            # The shared client may be broken; siblings keep their own reference
            self._reset_if_current(acme_client or self._client)
            raise AuthorityError(
                f"Certificate issuance failed: {type(e).__name__}: {e}",
                domain=domain_name,
            ) from e
        finally:
            for token in published_tokens:
                await self.publisher.remove(token)

        logger.info(f"Successfully obtained certificate for {domain_name}")

        return IssuedCertificate(
            provider=CertificateProvider.AUTHORITY,
            certificate_pem=leaf_pem,
            private_key_pem=private_key_pem,
            chain_pem=chain_pem,
            serial_number=info["serial_number"],
            fingerprint_sha256=info["fingerprint_sha256"],
            issuer=info["issuer"],
            issued_at=info["not_before"],
            expires_at=info["not_after"],
        )


# Singleton instance
_acme_service: ACMEService | None = None


def get_acme_service() -> ACMEService:
    """Get the global ACME service instance."""
    global _acme_service
    if _acme_service is None:
        _acme_service = ACMEService()
    return _acme_service
