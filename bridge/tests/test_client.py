"""Tests for the shared request/response algorithm in BridgeClient.

These tests verify that:
1. The handshake skips startup noise within its bound and fails past it
2. Typed operations send the right wire requests and unwrap responses
3. Only one request may be in flight, and a rejected one writes nothing
4. Late responses to timed-out requests never satisfy later requests
5. Engine death is reported with its exit status and is sticky
6. stop() is best-effort and the client can be started again
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from pob_bridge.client import BridgeClient
from pob_bridge.errors import (
    BridgeNotReadyError,
    BridgeProtocolError,
    BridgeStartupError,
    BridgeTimeoutError,
    ConcurrentRequestError,
    RemoteError,
    TransportClosedError,
)
from pob_bridge.models import ConfigUpdate, MainSelection, TreeSpec
from pob_bridge.transports import Transport

READY = '{"ready":true}'


# =============================================================================
# Scripted transport
# =============================================================================


Responder = Callable[[dict[str, Any]], list[str]]


def respond_with(replies: dict[str, list[Any]]) -> Responder:
    """Build a responder from per-action reply lines.

    Dict replies are JSON-encoded; strings are sent as-is. Actions without
    an entry get ``{"ok": true}``.
    """

    def responder(request: dict[str, Any]) -> list[str]:
        lines = replies.get(request["action"], [{"ok": True}])
        return [json.dumps(line) if isinstance(line, dict) else line for line in lines]

    return responder


class ScriptedTransport(Transport):
    """In-memory transport that answers each written request synchronously."""

    def __init__(
        self,
        banner: list[str] | None = None,
        responder: Responder | None = None,
        *,
        fail_open: Exception | None = None,
        die_on_open: bool = False,
    ) -> None:
        super().__init__()
        self.banner = [READY] if banner is None else banner
        self.responder = responder or respond_with({})
        self.fail_open = fail_open
        self.die_on_open = die_on_open
        self.written: list[bytes] = []
        self.opened = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed and not self._close_reported

    @property
    def requests(self) -> list[dict[str, Any]]:
        return [json.loads(data) for data in self.written]

    def describe(self) -> str:
        return "scripted engine"

    async def _open(self) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.opened = True
        for line in self.banner:
            self.emit(line)
        if self.die_on_open:
            self.die(1)

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportClosedError("scripted engine is gone")
        self.written.append(data)
        for line in self.responder(json.loads(data)):
            self.emit(line)

    async def close(self) -> None:
        self._closing = True
        self.closed = True

    def emit(self, text: str) -> None:
        self._deliver((text + "\n").encode("utf-8"))

    def die(self, exit_code: int | None = 1, signal: int | None = None) -> None:
        self._report_closed(
            TransportClosedError(
                f"PoB API exited: code={exit_code} signal={signal}",
                exit_code=exit_code,
                signal=signal,
            )
        )


class ScriptedClient(BridgeClient):
    """BridgeClient that opens queued scripted transports in order."""

    def __init__(self, *transports: ScriptedTransport, **kwargs: Any) -> None:
        kwargs.setdefault("timeout", 0.2)
        super().__init__(**kwargs)
        self._queued = list(transports)
        self.transports: list[ScriptedTransport] = []

    @property
    def transport(self) -> ScriptedTransport:
        return self.transports[-1]

    def _create_transport(self) -> Transport:
        transport = self._queued.pop(0) if self._queued else ScriptedTransport()
        self.transports.append(transport)
        return transport


async def started(transport: ScriptedTransport | None = None, **kwargs: Any) -> ScriptedClient:
    client = ScriptedClient(transport or ScriptedTransport(), **kwargs)
    await client.start()
    return client


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    """Tests for start() and the ready banner."""

    async def test_noise_before_banner_is_skipped(self) -> None:
        transport = ScriptedTransport(banner=["LOADING", "Tree 3_26 loaded", READY])
        client = await started(transport)

        assert client.is_started
        assert client.is_ready
        assert await client.ping() is True
        assert transport.requests == [{"action": "ping"}]

    async def test_banner_payload_is_kept(self) -> None:
        transport = ScriptedTransport(banner=['{"ready":true,"version":"2.48.2"}'])
        client = await started(transport)

        assert client.banner == {"ready": True, "version": "2.48.2"}

    async def test_non_ready_json_is_skipped(self) -> None:
        """Only ready: true counts; other objects are noise here."""
        transport = ScriptedTransport(banner=['{"ready":false}', '{"ok":true}', READY])
        client = await started(transport)

        assert client.is_ready

    async def test_banner_at_line_limit_is_accepted(self) -> None:
        noise = [f"LOADING {i}" for i in range(49)]
        client = await started(ScriptedTransport(banner=[*noise, READY]))

        assert client.is_ready

    async def test_banner_past_line_limit_fails(self) -> None:
        noise = [f"LOADING {i}" for i in range(50)]
        transport = ScriptedTransport(banner=[*noise, READY])
        client = ScriptedClient(transport)

        with pytest.raises(BridgeStartupError, match="after 50 lines") as exc_info:
            await client.start()

        assert exc_info.value.lines_scanned == 50
        assert transport.closed
        assert not client.is_started

    async def test_no_banner_times_out(self) -> None:
        transport = ScriptedTransport(banner=["LOADING"])
        client = ScriptedClient(transport, timeout=0.05)

        with pytest.raises(BridgeStartupError, match="Timed out waiting for ready banner"):
            await client.start()

        assert transport.closed
        assert not client.is_started

    async def test_close_during_handshake_is_startup_error(self) -> None:
        transport = ScriptedTransport(banner=["LOADING"], die_on_open=True)
        client = ScriptedClient(transport)

        with pytest.raises(BridgeStartupError, match="closed before sending ready banner"):
            await client.start()

        assert transport.closed

    async def test_open_failure_propagates(self) -> None:
        transport = ScriptedTransport(fail_open=BridgeStartupError("Failed to spawn"))
        client = ScriptedClient(transport)

        with pytest.raises(BridgeStartupError, match="Failed to spawn"):
            await client.start()

        assert not client.is_started

    async def test_start_is_idempotent(self) -> None:
        client = await started()
        await client.start()

        assert len(client.transports) == 1


# =============================================================================
# Typed operations
# =============================================================================


class TestOperations:
    """Tests for wire requests and response unwrapping."""

    async def test_load_build_xml(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with({"load_build_xml": [{"ok": True, "build_id": 7}]})
        )
        client = await started(transport)

        response = await client.load_build_xml("<PathOfBuilding/>", name="Test")

        assert response == {"ok": True, "build_id": 7}
        assert transport.written[-1] == (
            b'{"action":"load_build_xml","params":'
            b'{"xml":"<PathOfBuilding/>","name":"Test"}}\n'
        )

    async def test_get_stats_filters_fields(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with({"get_stats": [{"ok": True, "stats": {"Life": 5000}}]})
        )
        client = await started(transport)

        assert await client.get_stats(["Life"]) == {"Life": 5000}
        assert transport.requests[-1] == {
            "action": "get_stats",
            "params": {"fields": ["Life"]},
        }

    async def test_get_stats_without_fields_sends_empty_params(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with({"get_stats": [{"ok": True, "stats": {}}]})
        )
        client = await started(transport)

        await client.get_stats()

        assert transport.requests[-1] == {"action": "get_stats", "params": {}}

    async def test_add_item_omits_unset_options(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with({"add_item_text": [{"ok": True, "result": {"id": 3}}]})
        )
        client = await started(transport)

        assert await client.add_item("Rarity: Rare\nDoom Loop") == {"id": 3}
        await client.add_item("Rarity: Magic", slot_name="Ring 1", no_auto_equip=True)

        assert transport.requests[0] == {
            "action": "add_item_text",
            "params": {"text": "Rarity: Rare\nDoom Loop"},
        }
        assert transport.requests[1]["params"] == {
            "text": "Rarity: Magic",
            "slotName": "Ring 1",
            "noAutoEquip": True,
        }

    async def test_set_tree_uses_camel_case(self) -> None:
        tree = {"classId": 3, "ascendClassId": 1, "nodes": [100, 200]}
        transport = ScriptedTransport(
            responder=respond_with({"set_tree": [{"ok": True, "tree": tree}]})
        )
        client = await started(transport)

        result = await client.set_tree(
            TreeSpec(class_id=3, ascend_class_id=1, nodes=[100, 200])
        )

        assert result == tree
        assert transport.requests[-1] == {
            "action": "set_tree",
            "params": {"classId": 3, "ascendClassId": 1, "nodes": [100, 200]},
        }

    async def test_set_config_and_main_selection(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with(
                {"set_config": [{"ok": True, "config": {"bandit": "Alira"}}]}
            )
        )
        client = await started(transport)

        config = await client.set_config(ConfigUpdate(bandit="Alira", enemy_level=84))
        await client.set_main_selection(MainSelection(main_socket_group=2))

        assert config == {"bandit": "Alira"}
        assert transport.requests[0]["params"] == {"bandit": "Alira", "enemyLevel": 84}
        assert transport.requests[1] == {
            "action": "set_main_selection",
            "params": {"mainSocketGroup": 2},
        }

    @pytest.mark.parametrize(
        ("method", "action", "reply", "expected"),
        [
            ("get_tree", "get_tree", {"ok": True, "tree": {"nodes": []}}, {"nodes": []}),
            ("get_items", "get_items", {"ok": True, "items": [{"id": 1}]}, [{"id": 1}]),
            ("get_skills", "get_skills", {"ok": True, "result": {"groups": []}}, {"groups": []}),
            ("get_config", "get_config", {"ok": True, "config": {"x": 1}}, {"x": 1}),
            ("export_build_xml", "export_build_xml", {"ok": True, "xml": "<x/>"}, "<x/>"),
            ("get_build_info", "get_build_info", {"ok": True, "info": {"level": 90}}, {"level": 90}),
        ],
    )
    async def test_getters_unwrap_result_key(
        self, method: str, action: str, reply: dict, expected: Any
    ) -> None:
        transport = ScriptedTransport(responder=respond_with({action: [reply]}))
        client = await started(transport)

        assert await getattr(client, method)() == expected
        assert transport.requests[-1] == {"action": action}

    async def test_setters_send_params(self) -> None:
        transport = ScriptedTransport()
        client = await started(transport)

        assert await client.set_level(90) is None
        assert await client.set_flask_active(2, False) is None

        assert transport.requests == [
            {"action": "set_level", "params": {"level": 90}},
            {"action": "set_flask_active", "params": {"index": 2, "active": False}},
        ]

    async def test_remote_error_uses_engine_message(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with(
                {"get_stats": [{"ok": False, "error": "build not initialized"}]}
            )
        )
        client = await started(transport)

        with pytest.raises(RemoteError, match="^build not initialized$") as exc_info:
            await client.get_stats()

        assert exc_info.value.action == "get_stats"
        # Engine failures are answers, not faults: the client stays usable
        assert client.is_ready

    async def test_remote_error_without_message(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"get_tree": [{"ok": False}]}))
        client = await started(transport)

        with pytest.raises(RemoteError, match="get_tree failed"):
            await client.get_tree()


# =============================================================================
# Response scanning
# =============================================================================


class TestResponseScanning:
    """Tests for noise handling while waiting for a response."""

    async def test_noise_before_response_is_skipped(self) -> None:
        replies = [*(f"WARNING: {i}" for i in range(99)), {"ok": True}]
        transport = ScriptedTransport(responder=respond_with({"ping": replies}))
        client = await started(transport)

        assert await client.ping() is True

    async def test_noise_past_line_limit_is_protocol_error(self) -> None:
        replies = [*(f"WARNING: {i}" for i in range(100)), {"ok": True}]
        transport = ScriptedTransport(responder=respond_with({"ping": replies}))
        client = await started(transport)

        with pytest.raises(BridgeProtocolError, match="after 100 lines"):
            await client.ping()

    async def test_malformed_json_is_skipped(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with({"ping": ['{"ok": tru', {"ok": True}]})
        )
        client = await started(transport)

        assert await client.ping() is True

    async def test_object_without_ok_is_protocol_error(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"ping": [{"pong": True}]}))
        client = await started(transport)

        with pytest.raises(BridgeProtocolError, match="missing boolean 'ok'"):
            await client.ping()

    async def test_response_split_across_deliveries(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"slow": []}))
        client = await started(transport, timeout=1.0)

        task = asyncio.create_task(client._send("slow"))
        await asyncio.sleep(0.02)
        transport._deliver(b'{"ok":true,')
        await asyncio.sleep(0.02)
        transport._deliver(b'"result":"late"}\n')

        assert await task == {"ok": True, "result": "late"}


# =============================================================================
# Single-flight and stale responses
# =============================================================================


class TestSingleFlight:
    """Tests for the one-request-at-a-time rule."""

    async def test_second_request_fails_without_writing(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"slow": []}))
        client = await started(transport, timeout=1.0)

        first = asyncio.create_task(client._send("slow"))
        await asyncio.sleep(0.02)
        assert client.pending is not None
        assert client.pending.action == "slow"

        with pytest.raises(ConcurrentRequestError, match="'get_tree'.*'slow'"):
            await client.get_tree()
        assert len(transport.written) == 1

        transport.emit('{"ok":true,"result":"late"}')
        assert (await first)["result"] == "late"
        assert client.pending is None

    async def test_pending_cleared_after_failure(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"ping": [{"pong": 1}]}))
        client = await started(transport)

        with pytest.raises(BridgeProtocolError):
            await client.ping()

        assert client.pending is None


class TestStaleResponses:
    """Tests for late responses to timed-out requests."""

    async def test_timeout_names_action(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"slow": []}))
        client = await started(transport, timeout=0.05)

        with pytest.raises(BridgeTimeoutError, match="'slow' after 0.05s"):
            await client._send("slow")

        assert client.pending is None
        assert client.is_ready

    async def test_buffered_late_response_is_discarded(self) -> None:
        """A late reply that lands between requests is dropped before sending."""
        transport = ScriptedTransport(
            responder=respond_with(
                {"slow": [], "get_build_info": [{"ok": True, "info": {"level": 90}}]}
            )
        )
        client = await started(transport, timeout=0.05)

        with pytest.raises(BridgeTimeoutError):
            await client._send("slow")
        transport.emit('{"ok":true,"result":"late"}')

        assert await client.get_build_info() == {"level": 90}

    async def test_late_response_during_next_read_is_discarded(self) -> None:
        """A late reply arriving ahead of the next answer is skipped."""
        transport = ScriptedTransport(
            responder=respond_with(
                {
                    "slow": [],
                    "get_build_info": [
                        {"ok": True, "result": "late"},
                        {"ok": True, "info": {"level": 90}},
                    ],
                }
            )
        )
        client = await started(transport, timeout=0.05)

        with pytest.raises(BridgeTimeoutError):
            await client._send("slow")

        assert await client.get_build_info() == {"level": 90}

    async def test_late_response_never_satisfies_next_request(self) -> None:
        """With only the late reply available, the next request times out."""
        transport = ScriptedTransport(
            responder=respond_with({"slow": [], "ping": [{"ok": True, "result": "late"}]})
        )
        client = await started(transport, timeout=0.05)

        with pytest.raises(BridgeTimeoutError):
            await client._send("slow")
        with pytest.raises(BridgeTimeoutError, match="'ping'"):
            await client.ping()

    async def test_late_response_after_cancellation_is_discarded(self) -> None:
        """A caller cancelled mid-wait still owes the engine's reply."""
        transport = ScriptedTransport(
            responder=respond_with(
                {"slow": [], "get_build_info": [{"ok": True, "info": {"level": 90}}]}
            )
        )
        client = await started(transport, timeout=5.0)

        task = asyncio.create_task(client._send("slow"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert client.pending is None

        transport.emit('{"ok":true,"info":"late"}')

        assert await client.get_build_info() == {"level": 90}

    async def test_late_response_after_wait_for_is_discarded(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with(
                {
                    "slow": [],
                    "get_build_info": [
                        {"ok": True, "info": "late"},
                        {"ok": True, "info": {"level": 90}},
                    ],
                }
            )
        )
        client = await started(transport, timeout=5.0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(client._send("slow"), timeout=0.05)

        assert await client.get_build_info() == {"level": 90}

    async def test_late_response_after_noise_limit_is_discarded(self) -> None:
        """Running out of noise budget leaves the real reply in flight."""
        noise = [f"LOG {i}" for i in range(100)]
        transport = ScriptedTransport(
            responder=respond_with(
                {"noisy": noise, "get_build_info": [{"ok": True, "info": {"level": 90}}]}
            )
        )
        client = await started(transport)

        with pytest.raises(BridgeProtocolError, match="after 100 lines"):
            await client._send("noisy")
        transport.emit('{"ok":true,"info":"late"}')

        assert await client.get_build_info() == {"level": 90}

    async def test_malformed_response_is_not_owed_again(self) -> None:
        """A response missing 'ok' was consumed, so the next reply is kept."""
        transport = ScriptedTransport(
            responder=respond_with(
                {"ping": [{"pong": True}], "get_build_info": [{"ok": True, "info": {"level": 90}}]}
            )
        )
        client = await started(transport)

        with pytest.raises(BridgeProtocolError, match="missing boolean 'ok'"):
            await client.ping()

        assert await client.get_build_info() == {"level": 90}

    async def test_stop_during_request_leaves_restart_clean(self) -> None:
        """A request cut off by stop() does not poison the next session."""
        first = ScriptedTransport(responder=respond_with({"slow": []}))
        second = ScriptedTransport(
            responder=respond_with({"get_build_info": [{"ok": True, "info": {"level": 90}}]})
        )
        client = ScriptedClient(first, second, timeout=5.0)
        await client.start()

        task = asyncio.create_task(client._send("slow"))
        await asyncio.sleep(0.02)
        await client.stop()
        await client.start()
        with pytest.raises(TransportClosedError, match="Client stopped"):
            await task

        assert await client.get_build_info() == {"level": 90}

    async def test_noise_does_not_count_as_stale_response(self) -> None:
        transport = ScriptedTransport(
            responder=respond_with({"slow": [], "ping": [{"ok": True}]})
        )
        client = await started(transport, timeout=0.05)

        with pytest.raises(BridgeTimeoutError):
            await client._send("slow")
        transport.emit("WARNING: late noise")
        transport.emit('{"ok":true,"result":"late"}')

        assert await client.ping() is True


# =============================================================================
# Engine death
# =============================================================================


class TestEngineDeath:
    """Tests for transport loss."""

    async def test_death_while_pending_names_exit_code(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"slow": []}))
        client = await started(transport, timeout=1.0)

        task = asyncio.create_task(client._send("slow"))
        await asyncio.sleep(0.02)
        transport.die(exit_code=3)

        with pytest.raises(TransportClosedError, match="code=3") as exc_info:
            await task
        assert exc_info.value.exit_code == 3

    async def test_death_is_sticky(self) -> None:
        transport = ScriptedTransport()
        client = await started(transport)

        transport.die(exit_code=None, signal=9)

        assert client.is_dead
        assert not client.is_ready
        for _ in range(2):
            with pytest.raises(TransportClosedError, match="signal=9"):
                await client.ping()
        assert transport.written == []

    async def test_reply_before_death_is_still_delivered(self) -> None:
        """A response already buffered when the engine exits is returned."""

        def reply_then_die(request: dict[str, Any]) -> list[str]:
            transport.emit('{"ok":true}')
            transport.die(exit_code=0)
            return []

        transport = ScriptedTransport(responder=reply_then_die)
        client = await started(transport)

        assert await client.ping() is True
        assert client.is_dead


class TestNotReady:
    """Tests for requests made outside the ready state."""

    async def test_request_before_start(self) -> None:
        client = ScriptedClient()

        with pytest.raises(BridgeNotReadyError, match="Process not started"):
            await client.ping()

    async def test_request_after_stop(self) -> None:
        client = await started()
        await client.stop()

        with pytest.raises(BridgeNotReadyError):
            await client.ping()


# =============================================================================
# Stop / restart
# =============================================================================


class TestStop:
    """Tests for stop()."""

    async def test_stop_closes_transport(self) -> None:
        client = await started()
        transport = client.transport

        await client.stop()

        assert transport.closed
        assert not client.is_started
        assert not client.is_ready
        assert transport.written == []

    async def test_stop_sends_quit_when_configured(self) -> None:
        client = await started()
        client.quit_on_stop = True
        transport = client.transport

        await client.stop()

        assert transport.requests == [{"action": "quit"}]
        assert transport.closed

    async def test_stop_ignores_quit_failure(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"quit": []}))
        client = await started(transport, timeout=0.05)
        client.quit_on_stop = True

        await client.stop()

        assert transport.closed
        assert not client.is_started

    async def test_stop_after_death_skips_quit(self) -> None:
        client = await started()
        client.quit_on_stop = True
        transport = client.transport
        transport.die(exit_code=1)

        await client.stop()

        assert transport.written == []
        assert transport.closed
        assert not client.is_dead

    async def test_stop_when_not_started_is_noop(self) -> None:
        client = ScriptedClient()
        await client.stop()

        assert client.transports == []

    async def test_stop_wakes_pending_request(self) -> None:
        transport = ScriptedTransport(responder=respond_with({"slow": []}))
        client = await started(transport, timeout=5.0)

        task = asyncio.create_task(client._send("slow"))
        await asyncio.sleep(0.02)
        await client.stop()

        with pytest.raises(TransportClosedError, match="Client stopped"):
            await asyncio.wait_for(task, timeout=1.0)

    async def test_restart_uses_fresh_transport(self) -> None:
        first = ScriptedTransport()
        second = ScriptedTransport(banner=["LOADING", READY])
        client = ScriptedClient(first, second)

        await client.start()
        first.die(exit_code=1)
        await client.stop()
        await client.start()

        assert client.transport is second
        assert client.is_ready
        assert not client.is_dead
        assert await client.ping() is True
        assert second.requests == [{"action": "ping"}]
