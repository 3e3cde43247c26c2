import base64
import json
import os
import stat
import sys

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from core.openclaw_gateway.device_identity import DeviceIdentity, derive_device_id


def _b64url_decode(value):
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def test_generate_derives_device_id_from_public_key(identity):
    assert len(identity.public_key) == 32
    assert len(identity.private_key) == 32
    assert identity.device_id == derive_device_id(identity.public_key)
    assert len(identity.device_id) == 32


def test_signature_verifies_with_public_key(identity):
    data = b'{"nonce":"n"}'
    signature = _b64url_decode(identity.sign_b64url(data))
    Ed25519PublicKey.from_public_bytes(identity.public_key).verify(signature, data)
    with pytest.raises(InvalidSignature):
        Ed25519PublicKey.from_public_bytes(identity.public_key).verify(signature, b"other")


def test_dict_round_trip(identity):
    restored = DeviceIdentity.from_dict(identity.to_dict())
    assert restored == identity


def test_from_dict_rejects_mismatched_device_id(identity):
    record = identity.to_dict()
    record["deviceId"] = "0" * 32
    with pytest.raises(ValueError):
        DeviceIdentity.from_dict(record)


def test_from_dict_rejects_foreign_public_key(identity):
    other = DeviceIdentity.generate()
    record = identity.to_dict()
    record["publicKey"] = other.to_dict()["publicKey"]
    record["deviceId"] = other.device_id
    with pytest.raises(ValueError):
        DeviceIdentity.from_dict(record)


def test_load_or_create_persists_and_reloads(tmp_path):
    path = tmp_path / "keys" / "device-key.json"
    first = DeviceIdentity.load_or_create(str(path))
    assert path.is_file()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert set(data) == {"privateKey", "publicKey", "deviceId"}
    if sys.platform != "win32":
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    second = DeviceIdentity.load_or_create(str(path))
    assert second == first


def test_corrupt_key_file_is_regenerated(tmp_path):
    path = tmp_path / "device-key.json"
    path.write_text("{not json", encoding="utf-8")
    identity = DeviceIdentity.load_or_create(str(path))
    assert DeviceIdentity.from_dict(json.loads(path.read_text(encoding="utf-8"))) == identity


def test_unwritable_location_still_returns_identity(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    identity = DeviceIdentity.load_or_create(str(blocker / "device-key.json"))
    assert identity.device_id == derive_device_id(identity.public_key)
