"""Tests for pointer records, the publish/resolve protocol and republishing."""

import base64

import pytest

from ciphertree.crypto.ecies import generate_user_keypair
from ciphertree.crypto.signing import generate_signing_keypair
from ciphertree.errors import (
    ConsistencyError,
    CryptoError,
    NamingLayerError,
    ResolutionError,
    StaleSequenceError,
    ValidationError,
)
from ciphertree.pointer.records import (
    SOURCE_CACHE,
    build_pointer_record,
    derive_pointer_name,
    ensure_sequence_advances,
    marshal_record,
    public_key_from_pointer_name,
    unmarshal_record,
    verify_pointer_record,
)
from ciphertree.pointer.republish import enroll_for_republish, republish_entry
from ciphertree.storage.local import LocalNamingLayer, LocalRepublishQueue
from ciphertree.utils.helper import now_ms

DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def keypair():
    kp = generate_signing_keypair()
    yield kp
    kp.close()


class TestRecords:
    """Tests for signed record construction."""

    def test_pointer_name_roundtrip(self, keypair):
        name = derive_pointer_name(keypair.public_key)
        assert name.startswith("b")
        assert name == name.lower()
        assert public_key_from_pointer_name(name) == keypair.public_key

    @pytest.mark.parametrize("name", ["k51abc", "b!!!!", "baaaa"])
    def test_bad_pointer_names(self, name):
        with pytest.raises(ValidationError):
            public_key_from_pointer_name(name)

    def test_built_record_verifies(self, keypair):
        record = build_pointer_record(keypair, "addr", 4, DAY_MS)
        assert record.verified
        assert record.validity > now_ms()
        assert verify_pointer_record(record)

    def test_wire_roundtrip_verifies(self, keypair):
        record = build_pointer_record(keypair, "addr", 4, DAY_MS)
        parsed = unmarshal_record(record.name, marshal_record(record))
        assert parsed.value == "addr"
        assert parsed.sequence == 4
        assert not parsed.verified
        assert verify_pointer_record(parsed)

    def test_record_under_foreign_name_fails(self, keypair):
        other = generate_signing_keypair()
        record = build_pointer_record(other, "addr", 0, DAY_MS)
        record.name = derive_pointer_name(keypair.public_key)
        assert not verify_pointer_record(record)

    def test_sequence_must_advance(self):
        ensure_sequence_advances(0, None)
        ensure_sequence_advances(6, 5)
        for candidate in (5, 4):
            with pytest.raises(StaleSequenceError) as exc:
                ensure_sequence_advances(candidate, 5)
            assert exc.value.last_known == 5


class TestResolve:
    """Tests for resolution with cache fallback."""

    def test_unknown_name_fails(self, pointer_client, keypair):
        with pytest.raises(ResolutionError):
            pointer_client.resolve(derive_pointer_name(keypair.public_key))

    def test_fresh_record_is_verified(self, pointer_client, keypair):
        published = pointer_client.publish(keypair, "addr")
        record = pointer_client.resolve(published.name, require_verified=True)
        assert record.value == "addr"
        assert record.verified

    def test_timeout_falls_back_to_cache(self, pointer_client, fake_naming, keypair):
        published = pointer_client.publish(keypair, "addr")
        pointer_client.resolve(published.name)

        fake_naming.fail_fresh = TimeoutError("slow")
        record = pointer_client.resolve(published.name)
        assert record.source == SOURCE_CACHE
        assert record.value == "addr"
        assert record.is_provisional

    def test_unreachable_without_cache_fails(self, pointer_client, fake_naming, keypair):
        pointer_client.publish(keypair, "addr")
        fake_naming.fail_fresh = NamingLayerError("down")
        with pytest.raises(ResolutionError):
            pointer_client.resolve(derive_pointer_name(keypair.public_key))

    def test_provisional_rejected_when_verification_required(self, pointer_client, fake_naming, keypair):
        published = pointer_client.publish(keypair, "addr")
        pointer_client.resolve(published.name)
        fake_naming.fail_fresh = TimeoutError("slow")
        with pytest.raises(ConsistencyError):
            pointer_client.resolve(published.name, require_verified=True)

    def test_bad_signature_is_consistency_error(self, pointer_client, fake_naming, keypair):
        published = pointer_client.publish(keypair, "addr")
        raw = fake_naming.records[published.name]
        signature = bytearray(base64.b64decode(raw["signature"]))
        signature[0] ^= 0x01
        raw["signature"] = base64.b64encode(bytes(signature)).decode()
        with pytest.raises(ConsistencyError):
            pointer_client.resolve(published.name)

    def test_record_signed_by_other_key_is_consistency_error(self, pointer_client, fake_naming, keypair):
        name = pointer_client.publish(keypair, "addr").name
        other = generate_signing_keypair()
        forged = build_pointer_record(other, "evil", 7, DAY_MS)
        fake_naming.records[name] = {
            "value": forged.value,
            "sequence": forged.sequence,
            "signature": base64.b64encode(forged.signature).decode(),
            "signedPayload": base64.b64encode(forged.signed_payload).decode(),
            "publicKey": base64.b64encode(forged.public_key).decode(),
        }
        with pytest.raises(ConsistencyError):
            pointer_client.resolve(name)

    def test_forged_value_is_only_provisional(self, pointer_client, fake_naming, keypair):
        name = pointer_client.publish(keypair, "addr").name
        fake_naming.records[name]["value"] = "evil"
        record = pointer_client.resolve(name)
        assert record.is_provisional
        with pytest.raises(ConsistencyError):
            pointer_client.resolve(name, require_verified=True)

    def test_rollback_detected(self, pointer_client, fake_naming, keypair):
        name = pointer_client.publish(keypair, "v0").name
        first = dict(fake_naming.records[name])
        pointer_client.publish(keypair, "v1")
        fake_naming.records[name] = first
        with pytest.raises(StaleSequenceError):
            pointer_client.resolve(name)


class TestPublish:
    """Tests for sequence handling on publish."""

    def test_first_publish_starts_at_zero(self, pointer_client, keypair):
        assert pointer_client.publish(keypair, "a").sequence == 0
        assert pointer_client.publish(keypair, "b").sequence == 1
        assert pointer_client.resolve(derive_pointer_name(keypair.public_key)).value == "b"

    def test_retries_after_stale_rejection(self, pointer_client, fake_naming, keypair):
        fake_naming.stale_rejections = 1
        record = pointer_client.publish(keypair, "addr")
        assert fake_naming.submit_calls == 2
        # The rejection reported sequence 4 as current, so the retry lands above it
        assert record.sequence == 5

    def test_gives_up_after_max_attempts(self, pointer_client, fake_naming, keypair):
        fake_naming.stale_rejections = 10
        with pytest.raises(ConsistencyError):
            pointer_client.publish(keypair, "addr")
        assert fake_naming.submit_calls == 3

    def test_batch_partial_success(self, pointer_client, fake_naming):
        good, bad = generate_signing_keypair(), generate_signing_keypair()
        fake_naming.rejected_names.add(derive_pointer_name(bad.public_key))
        results = pointer_client.publish_batch([(good, "a"), (bad, "b")])
        assert [r.ok for r in results] == [True, False]
        assert isinstance(results[1].error, NamingLayerError)

    def test_empty_batch(self, pointer_client):
        assert pointer_client.publish_batch([]) == []


class TestLocalNamingLayer:
    """Tests for the filesystem naming layer."""

    def test_rejects_stale_and_unsigned(self, tmp_path, keypair):
        naming = LocalNamingLayer(tmp_path / "pointers")
        record = build_pointer_record(keypair, "addr", 3, DAY_MS)
        naming.submit(record.name, marshal_record(record))

        with pytest.raises(StaleSequenceError):
            stale = build_pointer_record(keypair, "old", 3, DAY_MS)
            naming.submit(stale.name, marshal_record(stale))

        unsigned = build_pointer_record(keypair, "addr", 9, DAY_MS)
        unsigned.signature = None
        with pytest.raises(NamingLayerError):
            naming.submit(unsigned.name, marshal_record(unsigned))

        assert naming.resolve_fresh(record.name, 1.0)["value"] == "addr"
        assert naming.resolve_cached(record.name) == {"value": "addr", "sequence": 3}

    def test_offline_layer_raises(self, tmp_path):
        naming = LocalNamingLayer(tmp_path / "pointers", offline=True)
        with pytest.raises(NamingLayerError):
            naming.resolve_fresh("bname", 1.0)


class TestRepublish:
    """Tests for the republishing hand-off."""

    def test_republish_bumps_sequence_with_long_lifetime(self, tmp_path, settings, keypair):
        naming = LocalNamingLayer(tmp_path / "pointers")
        queue = LocalRepublishQueue(tmp_path / "republish.json")
        collaborator = generate_user_keypair()

        record = build_pointer_record(keypair, "addr", 0, settings.record_lifetime_ms)
        naming.submit(record.name, marshal_record(record))
        enrollment = enroll_for_republish(queue, collaborator.public_key, keypair, record)
        assert keypair.private_key not in enrollment.wrapped_signing_key

        queued = queue.enrollments()
        assert len(queued) == 1
        republished = republish_entry(queued[0], collaborator.private_key, naming, settings)

        assert republished.sequence == 1
        assert republished.value == "addr"
        assert republished.validity > now_ms() + settings.record_lifetime_ms
        assert naming.resolve_fresh(record.name, 1.0)["sequence"] == 1

    def test_wrong_collaborator_key_fails(self, tmp_path, settings, keypair):
        naming = LocalNamingLayer(tmp_path / "pointers")
        queue = LocalRepublishQueue(tmp_path / "republish.json")
        collaborator, stranger = generate_user_keypair(), generate_user_keypair()
        record = build_pointer_record(keypair, "addr", 0, settings.record_lifetime_ms)
        enrollment = enroll_for_republish(queue, collaborator.public_key, keypair, record)
        with pytest.raises(CryptoError):
            republish_entry(enrollment, stranger.private_key, naming, settings)

    def test_queue_refuses_older_enrollment(self, tmp_path, settings, keypair):
        queue = LocalRepublishQueue(tmp_path / "republish.json")
        collaborator = generate_user_keypair()
        newer = build_pointer_record(keypair, "new", 5, settings.record_lifetime_ms)
        older = build_pointer_record(keypair, "old", 2, settings.record_lifetime_ms)
        enroll_for_republish(queue, collaborator.public_key, keypair, newer)
        with pytest.raises(NamingLayerError):
            enroll_for_republish(queue, collaborator.public_key, keypair, older)
