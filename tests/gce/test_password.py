from __future__ import annotations

import base64
import json
from datetime import UTC, datetime

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from winbuilder.config import BuilderConfig
from winbuilder.core.exceptions import (
    DecodeError,
    HandshakeError,
    HandshakeTimeout,
    OperationTimeout,
)
from winbuilder.gce.instances import InstanceDescriptor, InstanceState
from winbuilder.gce.password import (
    METADATA_KEY,
    CredentialExchange,
    KeyExchangeRequest,
    KeyExchangeResponse,
    decrypt_password,
    encode_exponent,
    encode_modulus,
    match_response,
    parse_responses,
)

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA1()),
    algorithm=hashes.SHA1(),
    label=None,
)


def _encrypt_for(modulus: str, exponent: str, password: str) -> str:
    """Encrypt the way the guest agent does, from the published key alone."""
    n = int.from_bytes(base64.b64decode(modulus), "big")
    e = int.from_bytes(base64.b64decode(exponent), "big")
    public_key = rsa.RSAPublicNumbers(e, n).public_key()
    return base64.b64encode(public_key.encrypt(password.encode(), _OAEP)).decode()


def _response_line(modulus: str, exponent: str, encrypted: str, error: str = "") -> str:
    record = {
        "userName": "builder",
        "passwordFound": True,
        "encryptedPassword": encrypted,
        "modulus": modulus,
        "exponent": exponent,
    }
    if error:
        record["errorMessage"] = error
    return json.dumps(record)


@pytest.fixture(scope="module")
def request_() -> KeyExchangeRequest:
    return KeyExchangeRequest.generate(
        "builder",
        email="nobody@nowhere.com",
        now=datetime(2024, 1, 1, tzinfo=UTC),
    )


class TestEncoding:
    def test_exponent(self):
        assert encode_exponent(65537) == "AQAB"

    def test_modulus_big_endian(self):
        assert encode_modulus(0x0102) == base64.b64encode(b"\x01\x02").decode()


class TestKeyExchangeRequest:
    def test_wire_record(self, request_: KeyExchangeRequest):
        record = json.loads(request_.to_json())
        assert set(record) == {"userName", "modulus", "exponent", "email", "expireOn"}
        assert record["userName"] == "builder"
        assert record["exponent"] == "AQAB"
        assert record["email"] == "nobody@nowhere.com"
        assert record["expireOn"] == "2024-01-01T00:05:00.000000Z"

    def test_modulus_is_2048_bits(self, request_: KeyExchangeRequest):
        assert len(base64.b64decode(request_.modulus)) == 256

    def test_private_key_not_in_repr(self, request_: KeyExchangeRequest):
        assert "private_key" not in repr(request_)

    def test_expired(self, request_: KeyExchangeRequest):
        assert not request_.expired(datetime(2024, 1, 1, 0, 4, tzinfo=UTC))
        assert request_.expired(datetime(2024, 1, 1, 0, 5, tzinfo=UTC))


class TestParseAndMatch:
    def test_noise_is_ignored(self):
        contents = "\n".join([
            "2024/01/01 GCEWindowsAgent: starting",
            '{"ready": true}',
            "[1, 2, 3]",
            _response_line("bW9k", "AQAB", "ZW5j"),
            "",
        ])
        responses = list(parse_responses(contents))
        assert len(responses) == 1
        assert responses[0].modulus == "bW9k"

    def test_from_json_rejects_non_record(self):
        with pytest.raises(DecodeError):
            KeyExchangeResponse.from_json('{"userName": "builder"}')
        with pytest.raises(DecodeError):
            KeyExchangeResponse.from_json("not json")

    def test_only_exact_modulus_matches(self, request_: KeyExchangeRequest):
        other = _response_line(request_.modulus[:-4] + "AAAA", "AQAB", "x")
        assert match_response(request_, parse_responses(other)) is None

        mine = _response_line(request_.modulus, "AQAB", "y")
        matched = match_response(request_, parse_responses(f"{other}\n{mine}\n"))
        assert matched is not None
        assert matched.encrypted_password == "y"


class TestDecryptPassword:
    def test_round_trip(self, request_: KeyExchangeRequest):
        encrypted = _encrypt_for(request_.modulus, request_.exponent, "P@ssw0rd!")
        response = KeyExchangeResponse.from_json(
            _response_line(request_.modulus, request_.exponent, encrypted),
        )
        assert decrypt_password(request_, response) == "P@ssw0rd!"

    def test_agent_error(self, request_: KeyExchangeRequest):
        response = KeyExchangeResponse.from_json(
            _response_line(request_.modulus, "AQAB", "", error="user is not allowed"),
        )
        with pytest.raises(HandshakeError, match="user is not allowed"):
            decrypt_password(request_, response)

    def test_bad_base64(self, request_: KeyExchangeRequest):
        response = KeyExchangeResponse.from_json(
            _response_line(request_.modulus, "AQAB", "!!not base64!!"),
        )
        with pytest.raises(DecodeError):
            decrypt_password(request_, response)

    def test_wrong_ciphertext(self, request_: KeyExchangeRequest):
        garbage = base64.b64encode(b"\x00" * 256).decode()
        response = KeyExchangeResponse.from_json(
            _response_line(request_.modulus, "AQAB", garbage),
        )
        with pytest.raises(DecodeError):
            decrypt_password(request_, response)


class FakeGuest:
    """Lifecycle double that answers password requests on its serial port."""

    def __init__(self, password: str = "s3cret", *, answer_after: int = 1, corrupt_first: bool = False):
        self.password = password
        self.answer_after = answer_after
        self.corrupt_first = corrupt_first
        self.metadata: tuple[tuple[str, str], ...] = (("windows-startup-script-bat", "winrm"),)
        self.written: list[tuple[tuple[str, str], ...]] = []
        self.reads = 0
        self.fail_operation = False

    async def refresh(self) -> InstanceDescriptor:
        return InstanceDescriptor(
            name="windows-builder",
            zone="us-central1-f",
            state=InstanceState.RUNNING,
            external_ip="203.0.113.7",
            fingerprint="fp",
            metadata=self.metadata,
        )

    async def set_metadata(self, descriptor, items) -> str:
        self.written.append(items)
        self.metadata = items
        return "op-meta"

    async def await_operation(self, name: str, timeout=None) -> None:
        if self.fail_operation:
            raise OperationTimeout(name, 120)

    async def serial_port_output(self, port: int = 4) -> str:
        self.reads += 1
        lines = ["GCEWindowsAgent: Starting"]
        if self.reads > self.answer_after and self.written:
            keys = dict(self.metadata)[METADATA_KEY].split("\n")
            record = json.loads(keys[-1])
            lines.append(_response_line("c29tZW9uZSBlbHNl", "AQAB", "Zm9v"))
            if self.corrupt_first:
                lines.append(_response_line(record["modulus"], record["exponent"], "AAAA"))
            encrypted = _encrypt_for(record["modulus"], record["exponent"], self.password)
            lines.append(_response_line(record["modulus"], record["exponent"], encrypted))
        return "\n".join(lines) + "\n"


class TestCredentialExchange:
    @pytest.mark.asyncio
    async def test_reset_password(self, fast_config: BuilderConfig):
        guest = FakeGuest("Tr1cky\"pass")
        exchange = CredentialExchange(guest, fast_config)  # type: ignore[arg-type]
        instance = await guest.refresh()

        password = await exchange.reset_password(instance, "builder", timeout=5.0)

        assert password == "Tr1cky\"pass"
        assert guest.reads >= 2
        items = dict(guest.written[0])
        assert items["windows-startup-script-bat"] == "winrm"
        assert json.loads(items[METADATA_KEY])["userName"] == "builder"

    @pytest.mark.asyncio
    async def test_skips_undecryptable_match(self, fast_config: BuilderConfig):
        guest = FakeGuest("pw", corrupt_first=True)
        exchange = CredentialExchange(guest, fast_config)  # type: ignore[arg-type]

        password = await exchange.reset_password(await guest.refresh(), "builder", timeout=5.0)

        assert password == "pw"

    @pytest.mark.asyncio
    async def test_timeout(self, fast_config: BuilderConfig):
        guest = FakeGuest(answer_after=10_000)
        exchange = CredentialExchange(guest, fast_config)  # type: ignore[arg-type]

        with pytest.raises(HandshakeTimeout):
            await exchange.reset_password(await guest.refresh(), "builder", timeout=0.05)

    @pytest.mark.asyncio
    async def test_metadata_write_failure(self, fast_config: BuilderConfig):
        guest = FakeGuest()
        guest.fail_operation = True
        exchange = CredentialExchange(guest, fast_config)  # type: ignore[arg-type]

        with pytest.raises(HandshakeError, match="publish"):
            await exchange.reset_password(await guest.refresh(), "builder")
        assert guest.reads == 0

    @pytest.mark.asyncio
    async def test_new_key_per_attempt(self, fast_config: BuilderConfig):
        guest = FakeGuest(answer_after=10_000)
        exchange = CredentialExchange(guest, fast_config)  # type: ignore[arg-type]
        instance = await guest.refresh()

        for _ in range(2):
            with pytest.raises(HandshakeTimeout):
                await exchange.reset_password(instance, "builder", timeout=0.02)

        keys = dict(guest.metadata)[METADATA_KEY].split("\n")
        assert len(keys) == 2
        assert json.loads(keys[0])["modulus"] != json.loads(keys[1])["modulus"]
