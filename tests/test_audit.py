"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from bursar.audit import AuditTrail, EventType
from bursar.units import tokens


def _trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.REQUEST_CREATED, subject_id=1, amount=tokens(100))
    trail.log(EventType.FUNDS_DISTRIBUTED, subject_id=1, amount=tokens(100))

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = tokens(9_999)
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_audit_detects_removed_entry(tmp_path):
    trail = _trail(tmp_path)
    for i in range(3):
        trail.log(EventType.DEPOSIT_RECEIVED, amount=tokens(10 + i))

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    del lines[1]
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_continues_across_instances(tmp_path):
    _trail(tmp_path).log(EventType.DEPOSIT_RECEIVED, amount=1)
    reopened = _trail(tmp_path)
    reopened.log(EventType.DEPOSIT_RECEIVED, amount=2)
    events = reopened.read_events()
    assert [e.amount for e in events] == [1, 2]
    assert events[1].prev_hash == events[0].event_hash


def test_env_key_overrides_key_file(tmp_path, monkeypatch):
    monkeypatch.setenv("BURSAR_AUDIT_HMAC_KEY", "shared-key")
    trail = _trail(tmp_path)
    trail.log(EventType.DEPOSIT_RECEIVED, amount=1)
    assert not (tmp_path / "secret" / "audit_hmac.key").read_bytes()

    monkeypatch.setenv("BURSAR_AUDIT_HMAC_KEY", "other-key")
    with pytest.raises(RuntimeError, match="event hash mismatch"):
        _trail(tmp_path).read_events()


def test_project_lifecycle_is_recorded(tmp_path, make_project, actors, run_ladder):
    trail = _trail(tmp_path)
    project = make_project(events=trail)
    request_id = project.create_request(
        actors.requester.address, actors.recipient.address, tokens(1_000), "Travel", "QmA"
    )
    run_ladder(project, request_id)

    created = trail.read_events(event_type=EventType.REQUEST_CREATED)
    assert len(created) == 1
    assert created[0].subject_id == request_id
    assert created[0].actor == actors.requester.address.lower()
    assert created[0].contract == project.address

    approvals = trail.read_events(subject_id=request_id, event_type=EventType.REQUEST_APPROVED)
    assert [e.details["step"] for e in approvals] == [
        "secretary", "committee", "finance",
        "committee_additional", "committee_additional", "committee_additional",
        "director",
    ]
    distributed = trail.read_events(event_type=EventType.FUNDS_DISTRIBUTED)
    assert distributed[0].amount == tokens(1_000)

    summary = trail.summary(contract=project.address)
    assert summary["by_type"]["approval_committed"] == 7
    assert summary["failures"] == 0


def test_read_events_filters_and_limit(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.REQUEST_CREATED, contract="0xaa", subject_id=1)
    trail.log(EventType.REQUEST_CREATED, contract="0xbb", subject_id=1)
    trail.log(EventType.REQUEST_CANCELLED, contract="0xaa", subject_id=1, success=True)
    trail.log(EventType.META_TX_FAILED, contract="0xcc", success=False, reason="nonce")

    assert len(trail.read_events(contract="0xaa")) == 2
    assert len(trail.read_events(event_type=EventType.REQUEST_CREATED)) == 2
    assert [e.contract for e in trail.read_events(limit=1)] == ["0xcc"]
    assert trail.summary()["failures"] == 1
    assert trail.summary(contract="0xbb")["total_events"] == 1


def test_verify_chain_reports_instead_of_raising(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.DEPOSIT_RECEIVED, amount=1, actor="0xaa")
    trail.log(EventType.DEPOSIT_RECEIVED, amount=2, actor="0xbb")
    assert trail.verify_chain() == (True, "2 events verified")
    assert trail.summary()["actors"] == 2

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["actor"] = "0xcc"
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    ok, reason = trail.verify_chain()
    assert not ok
    assert "line 2" in reason
