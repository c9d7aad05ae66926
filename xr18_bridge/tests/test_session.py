"""
Unit tests for the console session: addressing, polling, routing of replies
and meter blobs, and mute polarity.

Run with: pytest xr18_bridge/tests/test_session.py -v
"""

import asyncio

import pytest
from conftest import FakeTransport, console_reply, meter_datagram

from xr18_bridge.config import BridgeConfig, TimingConfig
from xr18_bridge.liveness import LivenessState
from xr18_bridge.session import (
    SessionListener,
    bus_assign_address,
    channel_address,
    console_to_mute,
    mute_to_console,
    return_address,
)


class RecordingListener(SessionListener):
    def __init__(self):
        self.returns = []
        self.channels = []
        self.bus_names = []

    def return_changed(self, index, changes):
        self.returns.append((index, changes))

    def channel_changed(self, index, changes):
        self.channels.append((index, changes))

    def bus_names_changed(self, names):
        self.bus_names.append(names)


@pytest.fixture
def session(bridge):
    session = bridge.session
    session.listener = RecordingListener()
    return session


class TestAddressing:
    def test_templates(self):
        assert return_address(3, "mix/fader") == "/rtn/3/mix/fader"
        assert channel_address(5, "config/name") == "/ch/05/config/name"
        assert channel_address(16, "mix/on") == "/ch/16/mix/on"
        assert bus_assign_address(2, 3) == "/rtn/2/mix/03/grpon"


class TestMutePolarity:
    def test_helpers_invert(self):
        assert mute_to_console(True) == 0
        assert mute_to_console(False) == 1
        assert console_to_mute(1) is False
        assert console_to_mute(0) is True

    def test_mute_write_encodes_off(self, session, transport):
        result = session.set_return_mute(2, True)
        assert result.ok
        msg = transport.messages()[-1]
        assert msg.address == "/rtn/2/mix/on"
        assert msg.values == [0]
        assert session.store.returns[2].mute is True

    def test_on_reply_reports_unmuted(self, session):
        session.handle_datagram(console_reply("/rtn/1/mix/on", "i", [1]))
        assert session.listener.returns == [(1, {"mute": False})]

    def test_channel_on_reply_reports_unmuted(self, session):
        session.store.register_channel(7)
        session.handle_datagram(console_reply("/ch/07/mix/on", "i", [0]))
        assert session.listener.channels == [(7, {"muted": True})]


class TestStartupAndPolling:
    def test_connection_made_subscribes_then_polls(self, config, clock, scheduler):
        from xr18_bridge.bridge import XR18Bridge

        bridge = XR18Bridge(config, clock=clock, scheduler=scheduler)
        bridge.store.register_channel(5)
        transport = FakeTransport()
        bridge.session.connection_made(transport)

        messages = transport.messages()
        assert messages[0].address == "/meters"
        assert messages[0].values == ["/meters/1", 40]
        addresses = [m.address for m in messages]
        assert "/xremotenfb" in addresses
        for index in range(1, 5):
            assert f"/rtn/{index}/mix/fader" in addresses
            assert f"/rtn/{index}/config/name" in addresses
        assert "/ch/05/mix/on" in addresses
        assert "/ch/05/config/name" in addresses
        assert "/bus/4/config/name" in addresses

    def test_sends_go_to_console(self, session, transport, config):
        session.keepalive()
        _, addr = transport.sent[-1]
        assert addr == (config.console_host, config.console_port)

    def test_poll_return_covers_all_fields(self, session, transport):
        session.poll_return(3)
        assert transport.addresses() == [
            "/rtn/3/mix/fader",
            "/rtn/3/mix/on",
            "/rtn/3/config/name",
            "/rtn/3/mix/01/grpon",
            "/rtn/3/mix/03/grpon",
            "/rtn/3/mix/05/grpon",
        ]
        assert all(m.args == [] for m in transport.messages())

    def test_renew_sends_both_variants(self, session, transport):
        session.renew_meters()
        assert [(m.address, m.values) for m in transport.messages()] == [
            ("/renew", ["meters/1"]),
            ("/renew", ["/meters/1"]),
        ]

    def test_recover_reasserts_session(self, session, transport):
        session.recover()
        addresses = transport.addresses()
        assert addresses[0] == "/xremotenfb"
        assert "/meters" in addresses
        assert addresses.count("/renew") == 2

    def test_register_channel_queries_once(self, session, transport):
        session.register_channel_target(5)
        session.register_channel_target(5)
        assert session.store.channel_count == 1
        assert transport.addresses() == [
            "/ch/05/mix/on",
            "/ch/05/config/name",
            "/ch/05/mix/on",
            "/ch/05/config/name",
        ]

    def test_poll_channels_only_registered(self, session, transport):
        session.poll_channels()
        assert transport.sent == []
        session.store.register_channel(12)
        session.poll_channels()
        assert transport.addresses() == ["/ch/12/mix/on", "/ch/12/config/name"]


class TestSendBoundary:
    def test_socket_not_ready(self, config, clock, scheduler):
        from xr18_bridge.bridge import XR18Bridge

        session = XR18Bridge(config, clock=clock, scheduler=scheduler).session
        result = session.keepalive()
        assert result.ok is False
        assert result.error == "socket not ready"
        assert session.send_failures == 1

    def test_os_error_is_returned_not_raised(self, session, transport):
        transport.fail = True
        result = session.set_return_fader(1, 0.5)
        assert result.ok is False
        assert "unreachable" in result.error
        assert session.store.returns[1].fader is None


class TestReplyRouting:
    def test_fader_reply(self, session):
        session.handle_datagram(console_reply("/rtn/2/mix/fader", "f", [0.75]))
        assert session.listener.returns == [(2, {"fader": 0.75})]

    def test_repeated_reply_is_not_rebroadcast(self, session):
        for _ in range(3):
            session.handle_datagram(console_reply("/rtn/2/mix/fader", "f", [0.75]))
        assert len(session.listener.returns) == 1

    def test_name_reply_is_stripped(self, session):
        session.handle_datagram(console_reply("/rtn/4/config/name", "s", ["  Reverb "]))
        assert session.listener.returns == [(4, {"name": "Reverb"})]

    def test_bus_assignment_reply(self, session):
        session.handle_datagram(console_reply("/rtn/1/mix/03/grpon", "i", [1]))
        session.handle_datagram(console_reply("/rtn/1/mix/05/grpon", "i", [0]))
        assert session.listener.returns == [(1, {"bus_b": True}), (1, {"bus_c": False})]

    def test_unknown_mixbus_ignored(self, session):
        session.handle_datagram(console_reply("/rtn/1/mix/02/grpon", "i", [1]))
        assert session.listener.returns == []

    def test_out_of_range_return_ignored(self, session):
        session.handle_datagram(console_reply("/rtn/9/mix/fader", "f", [0.5]))
        assert session.listener.returns == []

    def test_non_finite_fader_ignored(self, session):
        session.handle_datagram(console_reply("/rtn/1/mix/fader", "f", [float("nan")]))
        assert session.listener.returns == []

    def test_unregistered_channel_ignored(self, session):
        session.handle_datagram(console_reply("/ch/03/config/name", "s", ["Kick"]))
        assert session.listener.channels == []
        assert session.store.channel_count == 0

    def test_bus_name_reply(self, session):
        session.handle_datagram(console_reply("/bus/2/config/name", "s", ["Wedges"]))
        session.handle_datagram(console_reply("/bus/2/config/name", "s", ["Wedges"]))
        session.handle_datagram(console_reply("/bus/6/config/name", "s", [""]))
        assert session.listener.bus_names == [{"a": "Wedges", "b": "BUS 4", "c": "BUS 6"}]

    def test_any_reply_refreshes_liveness(self, session, clock):
        session.handle_datagram(console_reply("/xremotenfb"))
        assert session.liveness.last_console_reply_at == clock.now
        assert session.frames_received == 1

    def test_garbage_counts_decode_failure(self, session):
        session.handle_datagram(b"\x00\x01")
        assert session.decode_failures == 1
        assert session.liveness.last_console_reply_at is None


class TestMeterRouting:
    def _samples(self):
        samples = [-128 * 256] * 40
        samples[4] = -30 * 256  # ch05
        samples[18] = -60 * 256  # rtn1 L
        samples[19] = 0  # rtn1 R
        samples[20] = -78 * 256  # rtn2 L, below floor but signal present
        samples[21] = -90 * 256
        return samples

    def test_return_meters_use_louder_side(self, session):
        session.handle_datagram(meter_datagram(self._samples()))
        changes = dict(session.listener.returns)
        assert changes[1] == {"meter": 1.0, "signal_present": True}
        assert changes[2] == {"meter": 0.0, "signal_present": True}
        assert changes[3] == {"meter": 0.0, "signal_present": False}

    def test_channel_meter_reads_index_minus_one(self, session):
        session.store.register_channel(5)
        session.handle_datagram(meter_datagram(self._samples()))
        assert session.listener.channels == [(5, {"meter": pytest.approx(0.5), "signal_present": True})]

    def test_both_address_forms(self, session):
        session.handle_datagram(meter_datagram(address="meters/1"))
        session.handle_datagram(meter_datagram(address="/meters/1"))
        assert session.meter_frames == 2

    def test_meter_frame_makes_live(self, session):
        session.handle_datagram(meter_datagram())
        assert session.liveness.state is LivenessState.LIVE

    def test_bad_blob_does_not_refresh_meter_time(self, session):
        from xr18_bridge.osc import encode_message

        session.handle_datagram(encode_message("/meters/1", "b", [b"\x01"]))
        assert session.decode_failures == 1
        assert session.liveness.last_meter_frame_at is None
        assert session.liveness.state is LivenessState.STALE

    def test_other_meter_block_only_refreshes_liveness(self, session):
        session.handle_datagram(meter_datagram(address="/meters/2"))
        assert session.meter_frames == 1
        assert session.listener.returns == []


class TestTimers:
    @pytest.mark.asyncio
    async def test_timers_are_independent_tasks(self, clock, scheduler):
        from xr18_bridge.bridge import XR18Bridge

        timing = TimingConfig(
            keepalive_interval=0.01,
            poll_interval=0.01,
            channel_poll_interval=0.01,
            renew_interval=0.01,
            bus_name_interval=0.01,
        )
        bridge = XR18Bridge(BridgeConfig(timing=timing), clock=clock, scheduler=scheduler)
        transport = FakeTransport()
        bridge.session.connection_made(transport)
        transport.clear()

        bridge.session.start()
        await asyncio.sleep(0.05)
        await bridge.session.stop()

        addresses = transport.addresses()
        assert "/xremotenfb" in addresses
        assert "/renew" in addresses
        assert "/rtn/1/mix/fader" in addresses
        assert "/bus/2/config/name" in addresses
        assert transport.closed

    @pytest.mark.asyncio
    async def test_failing_action_does_not_stop_loop(self, session):
        calls = []

        def flaky():
            calls.append(True)
            raise RuntimeError("boom")

        task = asyncio.create_task(session._periodic("flaky", 0.005, flaky))
        await asyncio.sleep(0.05)
        task.cancel()
        await task
        assert len(calls) > 1
