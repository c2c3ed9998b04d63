"""Windows password reset over instance metadata and the serial console.

See https://cloud.google.com/compute/docs/instances/windows/automate-pw-generation

The builder publishes only an RSA public key (``windows-keys`` metadata). The
guest agent resets the account password, encrypts it with that key and
prints the result as a JSON line on serial port 4. The serial port is shared
diagnostic output, so reading it is a three-stage pipeline:

1. parse: decode each line on its own, dropping anything that is not a
   response record (``parse_responses``);
2. correlate: keep the response whose modulus equals the request's modulus
   (``match_response``), the only correlation key the channel offers;
3. accept: base64-decode and OAEP/SHA-1 decrypt the password
   (``decrypt_password``).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from google.api_core import exceptions as gapi_exceptions
from loguru import logger

from winbuilder.config import BuilderConfig
from winbuilder.core.exceptions import (
    DecodeError,
    HandshakeError,
    HandshakeTimeout,
    OperationFailedError,
    OperationTimeout,
    PollTimeout,
)
from winbuilder.wait import poll_until

from .instances import InstanceDescriptor, append_metadata
from .lifecycle import SERIAL_PORT, VMLifecycleManager

log = logger.bind(component="password")

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
METADATA_KEY = "windows-keys"


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def encode_modulus(n: int) -> str:
    """Base64 of the big-endian unsigned bytes of the modulus."""
    return base64.b64encode(n.to_bytes((n.bit_length() + 7) // 8, "big")).decode("ascii")


def encode_exponent(e: int) -> str:
    """Base64 of the low 3 bytes of the 4-byte big-endian exponent."""
    return base64.b64encode(e.to_bytes(4, "big")[1:]).decode("ascii")


@dataclass(frozen=True, slots=True)
class KeyExchangeRequest:
    """An ephemeral key published for one password reset attempt."""

    user_name: str
    modulus: str
    exponent: str
    email: str
    created_at: datetime
    expire_on: datetime
    private_key: rsa.RSAPrivateKey = field(repr=False, compare=False)

    @classmethod
    def generate(
        cls,
        user_name: str,
        *,
        email: str,
        validity: float = 300.0,
        now: datetime | None = None,
    ) -> KeyExchangeRequest:
        """Generate a fresh 2048-bit keypair and wrap it in a request."""
        key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
        numbers = key.public_key().public_numbers()
        created = now or datetime.now(UTC)
        return cls(
            user_name=user_name,
            modulus=encode_modulus(numbers.n),
            exponent=encode_exponent(numbers.e),
            email=email,
            created_at=created,
            expire_on=created + timedelta(seconds=validity),
            private_key=key,
        )

    def expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expire_on

    def to_json(self) -> str:
        return json.dumps(
            {
                "userName": self.user_name,
                "modulus": self.modulus,
                "exponent": self.exponent,
                "email": self.email,
                "expireOn": _rfc3339(self.expire_on),
            },
            separators=(",", ":"),
        )


@dataclass(frozen=True, slots=True)
class KeyExchangeResponse:
    """One password record read from the serial console."""

    user_name: str
    password_found: bool
    encrypted_password: str
    modulus: str
    exponent: str
    error_message: str = ""

    @classmethod
    def from_json(cls, line: str) -> KeyExchangeResponse:
        """Decode one serial port line.

        Raises:
            DecodeError: The line is not a JSON object with a modulus.
        """
        try:
            data: Any = json.loads(line)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Not JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("modulus"), str):
            raise DecodeError("Not a password response record")
        return cls(
            user_name=str(data.get("userName", "")),
            password_found=bool(data.get("passwordFound", False)),
            encrypted_password=str(data.get("encryptedPassword", "")),
            modulus=data["modulus"],
            exponent=str(data.get("exponent", "")),
            error_message=str(data.get("errorMessage", "") or ""),
        )


def parse_responses(contents: str) -> Iterator[KeyExchangeResponse]:
    """Yield every line of serial output that decodes as a response."""
    for line in contents.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            yield KeyExchangeResponse.from_json(line)
        except DecodeError:
            continue


def matching_responses(
    request: KeyExchangeRequest, responses: Iterable[KeyExchangeResponse],
) -> Iterator[KeyExchangeResponse]:
    """Yield the responses whose modulus equals the request's, in order."""
    return (r for r in responses if r.modulus == request.modulus)


def match_response(
    request: KeyExchangeRequest, responses: Iterable[KeyExchangeResponse],
) -> KeyExchangeResponse | None:
    """Return the first response whose modulus equals the request's."""
    return next(matching_responses(request, responses), None)


def decrypt_password(request: KeyExchangeRequest, response: KeyExchangeResponse) -> str:
    """Decrypt a matched response with the request's private key.

    Raises:
        HandshakeError: The guest agent reported an error.
        DecodeError: The ciphertext is not valid base64 or does not decrypt.
    """
    if response.error_message:
        raise HandshakeError(f"Password reset failed on instance: {response.error_message}")
    try:
        ciphertext = base64.b64decode(response.encrypted_password, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Cannot base64 decode password: {e}") from e
    try:
        plaintext = request.private_key.decrypt(
            ciphertext,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA1()),
                algorithm=hashes.SHA1(),
                label=None,
            ),
        )
    except ValueError as e:
        raise DecodeError(f"Cannot decrypt password response: {e}") from e
    return plaintext.decode("utf-8")


class CredentialExchange:
    """Resets a Windows account password through the handshake."""

    def __init__(
        self,
        lifecycle: VMLifecycleManager,
        config: BuilderConfig,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._config = config
        self._cancel = cancel

    async def reset_password(
        self,
        instance: InstanceDescriptor,
        user: str,
        timeout: float | None = None,
    ) -> str:
        """Run one handshake with a new keypair and return the password.

        Raises:
            HandshakeTimeout: No matching response before the deadline.
            HandshakeError: The metadata write failed or the agent reported an error.
        """
        timeout = self._config.handshake_timeout if timeout is None else timeout
        hlog = log.bind(instance=instance.name)

        request = await asyncio.to_thread(
            KeyExchangeRequest.generate,
            user,
            email=self._config.notification_email,
            validity=self._config.key_validity,
        )

        await self._publish(request, hlog)

        # A response to an expired key can never arrive.
        remaining = (request.expire_on - datetime.now(UTC)).total_seconds()
        timeout = max(0.0, min(timeout, remaining))

        hlog.info("Waiting for Windows password response for {user}", user=user)

        async def _poll() -> str | None:
            try:
                contents = await self._lifecycle.serial_port_output(SERIAL_PORT)
            except gapi_exceptions.GoogleAPICallError as e:
                hlog.warning("Unable to get serial port output: {err}", err=e)
                return None
            for response in matching_responses(request, parse_responses(contents)):
                try:
                    return decrypt_password(request, response)
                except DecodeError as e:
                    hlog.warning("Skipping undecodable password response: {err}", err=e)
            return None

        try:
            password = await poll_until(
                _poll,
                lambda _: True,
                timeout=timeout,
                interval=self._config.handshake_interval,
                cancel=self._cancel,
                description=f"password response from {instance.name}",
            )
        except PollTimeout as e:
            hlog.warning("No password response before timeout")
            raise HandshakeTimeout(instance.name, timeout) from e

        hlog.info("Password for {user} retrieved", user=user)
        return password

    async def _publish(self, request: KeyExchangeRequest, hlog: Any) -> None:
        # The fingerprint must come from the most recent read.
        current = await self._lifecycle.refresh()
        items = append_metadata(current.metadata, METADATA_KEY, request.to_json())
        hlog.info("Writing instance metadata for password reset")
        try:
            operation = await self._lifecycle.set_metadata(current, items)
            await self._lifecycle.await_operation(operation)
        except (
            gapi_exceptions.GoogleAPICallError,
            OperationTimeout,
            OperationFailedError,
        ) as e:
            hlog.error("Failed to set instance metadata: {err}", err=e)
            raise HandshakeError(f"Could not publish key exchange request: {e}") from e
