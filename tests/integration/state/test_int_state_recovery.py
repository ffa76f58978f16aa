# tests/integration/state/test_int_state_recovery.py - v1
"""Integration tests for persisted phase state.

Covers: state/manager.py, state/layout.py, state/checksum.py, state/locks.py
Real files under tmp_path; no mocks.
"""
from __future__ import annotations

import asyncio
import json

import pytest

from fleetdeploy.core.errors import CorruptedStateError
from fleetdeploy.state import layout
from fleetdeploy.state.manager import StateManager


def _payload(n: int) -> dict:
    return {"domain_id": "a.com", "attempt_id": f"deploy-a.com-{n}", "state": "SUCCEEDED", "verify_attempts": n}


class TestCorruptionAndRecovery:
    @pytest.mark.asyncio
    async def test_flipped_byte_detected_history_intact(self, state_root):
        manager = StateManager(state_root)
        await manager.save_state("domain-a.com", _payload(1))
        await manager.save_state("domain-a.com", _payload(2))

        current = layout.current_state_path(state_root, "domain-a.com")
        text = current.read_text(encoding="utf-8")
        current.write_text(text.replace('"verify_attempts": 2', '"verify_attempts": 3'), encoding="utf-8")

        with pytest.raises(CorruptedStateError):
            await manager.load_state("domain-a.com", validate=True)

        history = await manager.get_state_history("domain-a.com")
        assert len(history) == 2
        recovered = await manager.recover_state("domain-a.com")
        assert recovered.payload == _payload(2)

    @pytest.mark.asyncio
    async def test_unvalidated_load_returns_tampered_payload(self, state_root):
        manager = StateManager(state_root)
        await manager.save_state("domain-a.com", _payload(1))
        current = layout.current_state_path(state_root, "domain-a.com")
        envelope = json.loads(current.read_text(encoding="utf-8"))
        envelope["payload"]["state"] = "FAILED"
        current.write_text(json.dumps(envelope), encoding="utf-8")
        snapshot = await manager.load_state("domain-a.com", validate=False)
        assert snapshot.payload["state"] == "FAILED"

    @pytest.mark.asyncio
    async def test_truncated_file(self, state_root):
        manager = StateManager(state_root)
        await manager.save_state("domain-a.com", _payload(1))
        current = layout.current_state_path(state_root, "domain-a.com")
        current.write_text(current.read_text(encoding="utf-8")[:20], encoding="utf-8")
        with pytest.raises(CorruptedStateError):
            await manager.load_state("domain-a.com")
        assert (await manager.recover_state("domain-a.com")).payload == _payload(1)


class TestHistoryBounds:
    @pytest.mark.asyncio
    async def test_keeps_most_recent_two(self, state_root):
        manager = StateManager(state_root, max_history_items=2)
        results = [await manager.save_state("domain-a.com", _payload(n)) for n in range(3)]
        history = await manager.get_state_history("domain-a.com")
        assert [h.version_id for h in history] == [results[2].version_id, results[1].version_id]

    @pytest.mark.asyncio
    async def test_bound_holds_under_concurrent_saves(self, state_root):
        manager = StateManager(state_root, max_history_items=4)
        await asyncio.gather(*(manager.save_state("domain-a.com", _payload(n)) for n in range(12)))
        assert len(layout.list_history_files(state_root, "domain-a.com")) == 4
        snapshot = await manager.load_state("domain-a.com")
        assert snapshot.payload["verify_attempts"] in range(12)


class TestRoundTripAndClear:
    @pytest.mark.asyncio
    async def test_round_trip_across_instances(self, state_root):
        saved = await StateManager(state_root).save_state("domain-a.com", _payload(7))
        snapshot = await StateManager(state_root).load_state("domain-a.com")
        assert snapshot.payload == _payload(7)
        assert snapshot.checksum == saved.checksum
        assert snapshot.version_id == saved.version_id

    @pytest.mark.asyncio
    async def test_clear_then_load_is_none(self, state_root):
        manager = StateManager(state_root)
        await manager.save_state("domain-a.com", _payload(1))
        assert await manager.clear_state("domain-a.com") is True
        assert await manager.load_state("domain-a.com") is None
        assert await manager.get_state_history("domain-a.com") == []
        assert await manager.clear_state("domain-a.com") is False

    @pytest.mark.asyncio
    async def test_never_saved_phase(self, state_root):
        manager = StateManager(state_root)
        assert await manager.load_state("domain-never.com") is None
        assert await manager.recover_state("domain-never.com") is None
