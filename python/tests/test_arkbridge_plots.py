import pytest

from arkbridge.config import BridgeConfig
from arkbridge.events import EventBus
from arkbridge.protocol import parse_record
from arkbridge.router import EventRouter
from arkbridge.plots import PlotGeometry, PlotRenderScheduler, RenderResult, render_format
from arkbridge.rpc import CommDisposed, RequestSuperseded, RpcEngine

from arkbridge_stubs import RecordingChannel, TimerFactory, wait_until


PNG_REPLY = {"data": "iVBORw0KGgo=", "mime_type": "image/png"}


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def engine(channel):
    return RpcEngine(channel)


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def scheduler(engine, timers):
    scheduler = PlotRenderScheduler(engine, BridgeConfig(), timer_factory=timers)
    yield scheduler
    scheduler.dispose()


def _reply(engine, envelope, result=PNG_REPLY):
    engine.handle_message("plot-1", {"jsonrpc": "2.0", "id": envelope["id"], "result": result})


def test_render_format_mapping():
    assert render_format("svg") == "svg"
    assert render_format("svgp") == "svg"
    assert render_format("png") == "png"
    assert render_format("jpeg") == "png"
    assert render_format(None) == "png"


def test_geometry_must_be_positive():
    with pytest.raises(ValueError):
        PlotGeometry(0, 600)
    with pytest.raises(ValueError):
        PlotGeometry(800, 600, pixel_ratio=0)


def test_request_render_sends_render_params(scheduler, engine, channel):
    rendered = []
    scheduler.add_listener(rendered.append)
    scheduler.add_plot("plot-1")
    future = scheduler.request_render("plot-1", PlotGeometry(640, 480, 2.0), "svgp")
    [envelope] = channel.wait_for(1, method="render")
    assert envelope["params"] == {"size": {"width": 640, "height": 480}, "pixel_ratio": 2.0, "format": "svg"}
    _reply(engine, envelope, {"data": "PHN2Zz4=", "mime_type": "image/svg+xml"})
    result = future.result(timeout=2)
    assert isinstance(result, RenderResult)
    assert result.mime_type == "image/svg+xml"
    assert result.geometry == PlotGeometry(640, 480, 2.0)
    assert result.data_uri == "data:image/svg+xml;base64,PHN2Zz4="
    assert wait_until(lambda: rendered)
    assert rendered == [result]
    assert scheduler.last_result("plot-1") == result


def test_second_render_supersedes_the_first(scheduler, engine, channel):
    rendered = []
    scheduler.add_listener(rendered.append)
    scheduler.add_plot("plot-1")
    first = scheduler.request_render("plot-1", PlotGeometry(400, 300))
    [first_envelope] = channel.wait_for(1, method="render")
    second = scheduler.request_render("plot-1", PlotGeometry(800, 600))
    with pytest.raises(RequestSuperseded):
        first.result(timeout=0)
    envelopes = channel.wait_for(2, method="render")
    assert len(envelopes) == 2
    second_envelope = envelopes[1]
    assert second_envelope["params"]["size"] == {"width": 800, "height": 600}
    # The reply for the superseded render arrives late and is ignored.
    _reply(engine, first_envelope, {"data": "OLD", "mime_type": "image/png"})
    assert not second.done()
    _reply(engine, second_envelope)
    assert second.result(timeout=2).geometry == PlotGeometry(800, 600)
    assert wait_until(lambda: rendered)
    assert [result.data for result in rendered] == [PNG_REPLY["data"]]
    assert engine.pending_count() == 0


def test_geometry_changes_are_debounced(scheduler, engine, channel, timers):
    scheduler.add_plot("plot-1")
    for width in (500, 600, 700):
        scheduler.notify_geometry("plot-1", PlotGeometry(width, 400))
    assert channel.requests("render") == []
    assert len(timers.live) == 1
    assert timers.live[0].interval == 0.25
    timers.timers[0].fire()
    assert channel.requests("render") == []
    timers.live[0].fire()
    [envelope] = channel.wait_for(1, method="render")
    assert envelope["params"]["size"] == {"width": 700, "height": 400}


def test_user_initiated_geometry_renders_immediately(scheduler, channel, timers):
    scheduler.add_plot("plot-1")
    scheduler.notify_geometry("plot-1", PlotGeometry(500, 400))
    scheduler.notify_geometry("plot-1", PlotGeometry(500, 400, 2.0), user_initiated=True)
    [envelope] = channel.wait_for(1, method="render")
    assert envelope["params"]["pixel_ratio"] == 2.0
    assert timers.live == []


def test_static_plots_are_never_rendered(scheduler, channel, timers):
    rendered = []
    scheduler.add_listener(rendered.append)
    result = scheduler.add_static_plot("AAAA", plot_id="display-1")
    assert result.static
    assert rendered == [result]
    scheduler.notify_geometry("display-1", PlotGeometry(100, 100))
    assert timers.timers == []
    with pytest.raises(ValueError):
        scheduler.request_render("display-1")
    assert channel.sent == []
    with pytest.raises(KeyError):
        scheduler.request_render("no-such-plot")


def test_plot_comm_lifecycle_from_bus(engine, channel, timers):
    bus = EventBus()
    router = EventRouter(bus)
    engine.attach(bus)
    scheduler = PlotRenderScheduler(engine, BridgeConfig(), timer_factory=timers)
    scheduler.attach(bus)

    router.route(parse_record({"event": "comm_open", "comm_id": "plot-1", "target_name": "positron.plot"}))
    bus.pump()
    assert scheduler.is_dynamic("plot-1")
    [envelope] = channel.wait_for(1, method="render")
    assert envelope["params"] == {"size": {"width": 800, "height": 600}, "pixel_ratio": 1.0, "format": "png"}

    # The kernel says the plot changed: render again right away.
    _reply(engine, envelope)
    router.route(parse_record({"event": "comm_msg", "comm_id": "plot-1", "data": {"method": "update", "params": {}}}))
    bus.pump()
    envelopes = channel.wait_for(2, method="render")
    assert len(envelopes) == 2
    pending_id = envelopes[1]["id"]

    router.route(parse_record({"event": "comm_close", "comm_id": "plot-1"}))
    bus.pump()
    assert scheduler.plot_ids == []
    assert engine.pending_count() == 0
    # Nothing listens for the closed plot any more.
    assert engine.handle_message("plot-1", {"id": pending_id, "result": PNG_REPLY}) is None
    scheduler.dispose()


def test_legacy_display_data_becomes_static_plot(engine):
    bus = EventBus()
    router = EventRouter(bus)
    scheduler = PlotRenderScheduler(engine, BridgeConfig())
    scheduler.attach(bus)
    rendered = []
    scheduler.add_listener(rendered.append)
    router.route(parse_record({"event": "display_data", "data": "iVBO Rw==", "display_id": "d1"}))
    bus.pump()
    assert [(r.plot_id, r.data, r.static) for r in rendered] == [("d1", "iVBORw==", True)]
    assert not scheduler.is_dynamic("d1")


def test_dispose_plot_rejects_render_in_flight(scheduler, channel):
    scheduler.add_plot("plot-1")
    future = scheduler.request_render("plot-1")
    channel.wait_for(1, method="render")
    assert scheduler.dispose_plot("plot-1")
    with pytest.raises(CommDisposed):
        future.result(timeout=2)
    assert not scheduler.dispose_plot("plot-1")


def test_close_plot_notifies_kernel(scheduler, channel):
    scheduler.add_plot("plot-1")
    assert scheduler.close_plot("plot-1")
    assert channel.closed == ["plot-1"]


def test_auto_render_can_be_disabled(engine, channel):
    bus = EventBus()
    router = EventRouter(bus)
    scheduler = PlotRenderScheduler(engine, BridgeConfig(auto_render_plots=False))
    scheduler.attach(bus)
    router.route(parse_record({"event": "comm_open", "comm_id": "plot-2", "target_name": "positron.plot"}))
    bus.pump()
    assert scheduler.is_dynamic("plot-2")
    assert channel.sent == []
    scheduler.dispose()


def test_update_queued_right_after_comm_open_renders(engine, channel):
    bus = EventBus()
    router = EventRouter(bus)
    engine.attach(bus)
    scheduler = PlotRenderScheduler(engine, BridgeConfig(auto_render_plots=False))
    scheduler.attach(bus)
    router.route(parse_record({"event": "comm_open", "comm_id": "plot-3", "target_name": "positron.plot"}))
    router.route(parse_record({"event": "comm_msg", "comm_id": "plot-3", "data": {"method": "update", "params": {}}}))
    bus.pump()
    assert len(channel.wait_for(1, method="render")) == 1
    scheduler.dispose()
    engine.detach()
