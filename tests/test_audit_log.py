import json
from datetime import datetime, timezone

import pytest

from echo_gateway.audit_log import AuditSigner, TamperEvidentAuditLog
from echo_gateway.engine import EchoGateway
from echo_gateway.errors import AdmissionError
from echo_gateway.models import ActorContext, Provenance, Role

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SEED = "11" * 32


def _log(tmp_path):
    signer = AuditSigner.from_seed_hex(SEED, key_id="k1")
    return TamperEvidentAuditLog(str(tmp_path / "audit.jsonl"), signer), {"k1": signer.public_key_hex}


def test_chain_verifies(tmp_path):
    log, keys = _log(tmp_path)
    for i in range(3):
        log.append_event({"event_type": "test", "n": i})
    assert TamperEvidentAuditLog.verify_file(log.path, keys) == (True, "OK", 3)


def test_chain_continues_after_reopen(tmp_path):
    log, keys = _log(tmp_path)
    log.append_event({"n": 1})
    reopened, _ = _log(tmp_path)
    reopened.append_event({"n": 2})
    assert TamperEvidentAuditLog.verify_file(log.path, keys) == (True, "OK", 2)


def test_edited_event_is_detected(tmp_path):
    log, keys = _log(tmp_path)
    log.append_event({"actor_id": "alice", "n": 1})
    log.append_event({"actor_id": "alice", "n": 2})

    lines = open(log.path, encoding="utf-8").read().splitlines()
    rec = json.loads(lines[0])
    rec["event"]["actor_id"] = "mallory"
    lines[0] = json.dumps(rec, sort_keys=True)
    open(log.path, "w", encoding="utf-8").write("\n".join(lines) + "\n")

    assert TamperEvidentAuditLog.verify_file(log.path, keys) == (False, "EVENT_HASH_MISMATCH", 1)


def test_dropped_record_breaks_the_chain(tmp_path):
    log, keys = _log(tmp_path)
    for i in range(3):
        log.append_event({"n": i})
    lines = open(log.path, encoding="utf-8").read().splitlines()
    open(log.path, "w", encoding="utf-8").write("\n".join([lines[0], lines[2]]) + "\n")

    assert TamperEvidentAuditLog.verify_file(log.path, keys) == (False, "CHAIN_BROKEN", 2)


def test_unknown_signer_is_rejected(tmp_path):
    log, _ = _log(tmp_path)
    log.append_event({"n": 1})
    other = AuditSigner.generate("k1")
    ok, reason, _ = TamperEvidentAuditLog.verify_file(log.path, {"k1": other.public_key_hex})
    assert (ok, reason) == (False, "INVALID_SIGNATURE")
    assert TamperEvidentAuditLog.verify_file(log.path, {})[1] == "UNKNOWN_KEY"


def test_missing_file_is_trivially_ok(tmp_path):
    assert TamperEvidentAuditLog.verify_file(str(tmp_path / "none.jsonl"), {}) == (True, "NO_FILE", 0)


def test_gateway_records_writes_rejections_and_alerts(tmp_path):
    log, keys = _log(tmp_path)
    gw = EchoGateway(audit_log=log, clock=lambda: NOW)
    prov = Provenance.parse("observed", "direct", "audit-test")
    ctx = ActorContext("alice", Role.ANALYST)

    gw.track_reasoning(ctx, "A", 0.9, "dp", prov)
    with pytest.raises(AdmissionError):
        gw.track_reasoning(ctx, "A", 0.99, "dp", prov)

    events = [json.loads(line)["event"] for line in open(log.path, encoding="utf-8")]
    kinds = [e["event_type"] for e in events]
    assert kinds == ["reasoning_tracked", "alert_emitted", "admission_rejected"]
    assert events[0]["data_scope"] == "observed"
    assert events[2]["kind"] == "ConfidenceCapExceeded"
    assert TamperEvidentAuditLog.verify_file(log.path, keys)[0] is True
