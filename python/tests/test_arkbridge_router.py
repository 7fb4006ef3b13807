import base64
import logging
import threading

from arkbridge.events import (
    CommMessageEvent,
    CommOpenEvent,
    EventBus,
    EventSubscription,
    KernelStatusEvent,
    PlotDataEvent,
    ShowHtmlFileEvent,
    parse_event,
)
from arkbridge.protocol import Feed, parse_record
from arkbridge.router import EventRouter, normalize_image_payload


def _record(**fields):
    return parse_record(fields)


def test_parse_event_builds_typed_events():
    event = parse_event(_record(event="ui_comm_open", comm_id="u1", target_name="positron.ui"))
    assert isinstance(event, CommOpenEvent)
    assert event.capability == "ui"
    assert event.target_name == "positron.ui"

    event = parse_event(_record(event="comm_msg", comm_id="c1", data={"method": "update"}))
    assert isinstance(event, CommMessageEvent)
    assert event.message == {"method": "update"}

    event = parse_event(
        _record(
            event="show_html_file",
            comm_id="u1",
            data={"params": {"path": "/tmp/x.html", "title": "Widget", "height": "300"}},
        )
    )
    assert isinstance(event, ShowHtmlFileEvent)
    assert event.path == "/tmp/x.html"
    assert event.height == 300
    assert event.destination == "viewer"


def test_router_publishes_each_record_on_one_feed():
    bus = EventBus()
    router = EventRouter(bus)
    seen = {feed: [] for feed in Feed}
    for feed in Feed:
        bus.on(lambda event, feed=feed: seen[feed].append(event.event), feeds=[feed])

    router.route_all(
        [
            _record(event="comm_open", comm_id="p1", target_name="positron.plot"),
            _record(event="comm_msg", comm_id="p1", data={}),
            _record(event="comm_close", comm_id="p1"),
            _record(event="kernel_status", status="idle"),
        ]
    )
    bus.pump()
    assert seen[Feed.COMM_OPEN] == ["comm_open"]
    assert seen[Feed.COMM_MESSAGE] == ["comm_msg"]
    assert seen[Feed.COMM_CLOSE] == ["comm_close"]
    assert seen[Feed.OUT_OF_BAND] == ["kernel_status"]
    assert router.routed_count == 4


def test_router_drops_comm_events_without_comm_id(caplog):
    bus = EventBus()
    router = EventRouter(bus)
    received = []
    bus.on(received.append)
    with caplog.at_level(logging.WARNING, logger="arkbridge.router"):
        assert router.route(_record(event="comm_msg", data={"method": "x"})) is None
    bus.pump()
    assert received == []
    assert router.dropped_count == 1
    assert "without comm_id" in caplog.text


def test_router_drops_html_events_without_params():
    bus = EventBus()
    router = EventRouter(bus)
    assert router.route(_record(event="show_html_file", comm_id="u1", data={})) is None


def test_subscription_filters_by_comm_and_category():
    bus = EventBus()
    router = EventRouter(bus)
    mine = []
    bus.on(mine.append, comm_id="c2", categories=["comm_msg"])
    router.route(_record(event="comm_msg", comm_id="c1", data={}))
    router.route(_record(event="comm_msg", comm_id="c2", data={"n": 1}))
    router.route(_record(event="comm_close", comm_id="c2"))
    bus.pump()
    assert [event.data for event in mine] == [{"n": 1}]


def test_bounded_queue_drops_oldest():
    sub = EventSubscription(queue_size=2, handler=lambda event: None)
    events = [parse_event(_record(event="kernel_status", status=str(n))) for n in range(3)]
    for event in events:
        sub.push(event)
    delivered = []
    sub.handler = delivered.append
    sub.dispatch()
    assert [event.status for event in delivered] == ["1", "2"]
    assert sub.dropped == 1


def test_unbounded_queue_keeps_everything():
    sub = EventSubscription(queue_size=0)
    for n in range(1000):
        sub.push(parse_event(_record(event="kernel_status", status=str(n))))
    delivered = []
    sub.handler = delivered.append
    sub.dispatch()
    assert len(delivered) == 1000
    assert sub.dropped == 0


def test_failing_handler_does_not_block_other_subscribers(caplog):
    bus = EventBus()
    ok = []

    def boom(event):
        raise RuntimeError("handler bug")

    bus.on(boom)
    bus.on(ok.append)
    with caplog.at_level(logging.ERROR, logger="arkbridge.events"):
        bus.publish(parse_event(_record(event="alive")))
        bus.pump()
    assert len(ok) == 1
    assert "event handler failed" in caplog.text


def test_pump_interleaves_subscriptions_in_publish_order():
    bus = EventBus()
    router = EventRouter(bus)
    seen = []
    bus.on(lambda event: seen.append(("msg", event.comm_id)), feeds=[Feed.COMM_MESSAGE], queue_size=0)
    bus.on(lambda event: seen.append(("close", event.comm_id)), feeds=[Feed.COMM_CLOSE], queue_size=0)
    bus.on(lambda event: seen.append(("open", event.comm_id)), feeds=[Feed.COMM_OPEN], queue_size=0)
    router.route(_record(event="comm_open", comm_id="c1"))
    router.route(_record(event="comm_msg", comm_id="c1", data={"method": "update"}))
    router.route(_record(event="comm_close", comm_id="c1"))
    router.route(_record(event="comm_msg", comm_id="c1", data={"id": "late", "result": 1}))
    bus.pump()
    assert seen == [("open", "c1"), ("msg", "c1"), ("close", "c1"), ("msg", "c1")]


def test_dispatcher_thread_delivers_in_order():
    bus = EventBus()
    got = []
    done = threading.Event()

    def handler(event):
        got.append(event.status)
        if len(got) == 50:
            done.set()

    bus.on(handler, queue_size=0)
    bus.start(interval=0.005)
    try:
        for n in range(50):
            bus.publish(KernelStatusEvent(event="kernel_status", feed=Feed.OUT_OF_BAND, status=str(n)))
        assert done.wait(2.0)
    finally:
        bus.stop()
    assert got == [str(n) for n in range(50)]
    assert not bus.running


def test_normalize_data_uri():
    assert normalize_image_payload("data:image/svg+xml;base64,PHN2Zz4=") == ("PHN2Zz4=", "image/svg+xml")


def test_normalize_inline_base64_strips_whitespace():
    assert normalize_image_payload("iVBO\nRw0K GgoA\n") == ("iVBORw0KGgoA", "image/png")


def test_normalize_reads_file_path_and_uri(tmp_path):
    png = tmp_path / "plot.png"
    png.write_bytes(b"\x89PNG\r\n")
    expected = base64.b64encode(b"\x89PNG\r\n").decode("ascii")
    assert normalize_image_payload(str(png)) == (expected, "image/png")
    assert normalize_image_payload(png.as_uri()) == (expected, "image/png")

    svg = tmp_path / "plot.svg"
    svg.write_text("<svg/>")
    assert normalize_image_payload(svg.as_uri())[1] == "image/svg+xml"


def test_missing_plot_file_drops_event(tmp_path, caplog):
    bus = EventBus()
    router = EventRouter(bus)
    uri = (tmp_path / "gone.png").as_uri()
    with caplog.at_level(logging.ERROR, logger="arkbridge.router"):
        assert router.route(_record(event="display_data", data=uri)) is None
    assert "does not exist" in caplog.text


def test_router_normalises_plot_payload():
    bus = EventBus()
    router = EventRouter(bus)
    plots = []
    bus.on(plots.append, categories=["display_data"])
    router.route(_record(event="display_data", data="data:image/png;base64,AAAA", display_id="d1"))
    bus.pump()
    assert isinstance(plots[0], PlotDataEvent)
    assert plots[0].base64_data == "AAAA"
    assert plots[0].display_id == "d1"
