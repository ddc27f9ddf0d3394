"""Certificate enrollment over the ACME protocol."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import josepy as jose
import structlog
from acme import challenges, client, crypto_util, errors, messages, standalone
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .exceptions import CredentialError
from .version import get_user_agent

__all__ = ("AcmeEnroller",)


class AcmeEnroller:
    """Obtains certificates from an ACME certificate authority such as
    Let's Encrypt, answering HTTP-01 challenges on ``http_port``.

    Parameters
    ----------
    directory_url : `str`
        The ACME directory URL.
    account_key_path : `str`
        Where the ACME account key is kept. A key is generated on first use.
    http_port : `int`
        Port to answer HTTP-01 challenges on. The certificate authority
        connects to port 80 of the domain, so this must be reachable there.
    timeout : `datetime.timedelta`
        How long to wait for the order to be validated and issued.
    logger
        Logger to use. Defaults to a structlog logger for this module.
    """

    def __init__(
        self,
        *,
        directory_url: str,
        account_key_path: str,
        http_port: int = 80,
        timeout: timedelta = timedelta(minutes=5),
        logger: Any | None = None,
    ) -> None:
        self._directory_url = directory_url
        self._account_key_path = Path(account_key_path)
        self._http_port = http_port
        self._timeout = timeout
        self._logger = logger or structlog.getLogger(__name__)

    def enroll(self, *, domain: str, email: str, private_key: bytes) -> bytes:
        """Run an ACME order for ``domain`` and return the full certificate
        chain as PEM.

        Raises
        ------
        previewenvoperator.exceptions.CredentialError
            Raised if the certificate authority rejects the order or no
            HTTP-01 challenge is offered.
        """
        account_key = self._account_key()
        net = client.ClientNetwork(account_key, user_agent=get_user_agent())
        try:
            directory = client.ClientV2.get_directory(self._directory_url, net)
            acme_client = client.ClientV2(directory, net=net)
            self._register(acme_client, email)

            csr = crypto_util.make_csr(private_key, [domain])
            order = acme_client.new_order(csr)

            answers = []
            resources = set()
            for authz in order.authorizations:
                challb = _http01_challenge(authz)
                response, validation = challb.response_and_validation(
                    account_key
                )
                resources.add(
                    standalone.HTTP01RequestHandler.HTTP01Resource(
                        chall=challb.chall,
                        response=response,
                        validation=validation,
                    )
                )
                answers.append((challb, response))

            servers = standalone.HTTP01DualNetworkedServers(
                ("", self._http_port), resources
            )
            servers.serve_forever()
            try:
                for challb, response in answers:
                    acme_client.answer_challenge(challb, response)
                order = acme_client.poll_and_finalize(
                    order, deadline=datetime.now() + self._timeout
                )
            finally:
                servers.shutdown_and_server_close()
        except errors.Error as e:
            raise CredentialError(f"ACME enrollment failed: {e}") from e

        self._logger.info(f"Issued certificate for {domain}")
        return order.fullchain_pem.encode("utf-8")

    def _register(self, acme_client: Any, email: str) -> None:
        registration = messages.NewRegistration.from_data(
            email=email, terms_of_service_agreed=True
        )
        try:
            acme_client.new_account(registration)
        except errors.ConflictError as e:
            # The key is already registered; use the existing account.
            acme_client.net.account = messages.RegistrationResource(
                uri=e.location, body=messages.Registration()
            )

    def _account_key(self) -> jose.JWKRSA:
        if self._account_key_path.is_file():
            key = serialization.load_pem_private_key(
                self._account_key_path.read_bytes(), password=None
            )
            return jose.JWKRSA(key=key)

        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self._account_key_path.parent.mkdir(parents=True, exist_ok=True)
        self._account_key_path.write_bytes(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        self._account_key_path.chmod(0o600)
        return jose.JWKRSA(key=key)


def _http01_challenge(authz: Any) -> Any:
    for challb in authz.body.challenges:
        if isinstance(challb.chall, challenges.HTTP01):
            return challb
    raise CredentialError(
        f"No HTTP-01 challenge offered for {authz.body.identifier.value}"
    )
