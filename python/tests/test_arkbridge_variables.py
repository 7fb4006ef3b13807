from arkbridge.events import EventBus
from arkbridge.protocol import parse_record
from arkbridge.router import EventRouter
from arkbridge.rpc import RpcEngine
from arkbridge.variables import VariablesClient, VariablesUpdate

from arkbridge_stubs import AutoReplyChannel, RecordingChannel


VARIABLES = [{"display_name": "x", "display_type": "dbl", "display_value": "42"}]


def _kernel(method, params):
    if method == "list":
        return {"variables": VARIABLES, "length": 1, "version": 3}
    if method == "inspect":
        return {"children": [{"display_name": "a"}], "length": 1}
    return None


def _client(**kwargs):
    channel = AutoReplyChannel(_kernel)
    engine = RpcEngine(channel)
    channel.engine = engine
    return VariablesClient(engine, **kwargs), channel


def test_update_variables_property():
    assert VariablesUpdate("refresh", {"variables": VARIABLES}).variables == VARIABLES
    assert VariablesUpdate("inspect", {"children": [1, 2]}).variables == [1, 2]
    assert VariablesUpdate("update", {}).variables == []


def test_requests_without_comm_are_skipped():
    client, channel = _client()
    assert client.refresh() is None
    assert client.delete(["x"]) is None
    assert channel.sent == []


def test_refresh_and_inspect_deliver_updates():
    client, channel = _client()
    updates = []
    client.add_listener(updates.append)
    client.bind("vars-1")
    assert client.refresh().result(timeout=1)["version"] == 3
    client.inspect(["x"])
    assert [update.method for update in updates] == ["refresh", "inspect"]
    assert updates[0].variables == VARIABLES
    assert updates[1].variables == [{"display_name": "a"}]
    assert channel.requests("inspect")[0]["params"] == {"path": ["x"]}


def test_other_requests_send_their_params():
    client, channel = _client()
    client.bind("vars-1")
    client.view(["df"])
    client.clear(include_hidden_objects=True)
    client.delete(["x", "y"])
    client.clipboard_format(["df"], "text/html")
    assert [data.get("params") for data in channel.requests()] == [
        {"path": ["df"]},
        {"include_hidden_objects": True},
        {"names": ["x", "y"]},
        {"path": ["df"], "format": "text/html"},
    ]


def test_kernel_pushed_updates_reach_listeners():
    client, channel = _client()
    updates = []
    client.add_listener(updates.append)
    client.bind("vars-1")
    channel.engine.handle_message("vars-1", {"method": "update", "params": {"assigned": [], "removed": ["x"]}})
    channel.engine.handle_message("vars-1", {"method": "refresh", "params": {"variables": VARIABLES}})
    channel.engine.handle_message("vars-1", {"method": "something_else"})
    assert [update.method for update in updates] == ["update", "refresh"]
    assert updates[0].params["removed"] == ["x"]


def test_rebinding_disposes_the_old_comm():
    channel = RecordingChannel()
    engine = RpcEngine(channel)
    client = VariablesClient(engine)
    client.bind("vars-1")
    pending = client.refresh()
    client.bind("vars-2")
    assert pending.done
    assert client.comm_id == "vars-2"
    updates = []
    client.add_listener(updates.append)
    engine.handle_message("vars-1", {"method": "update", "params": {}})
    assert updates == []


def test_comm_open_event_binds_and_refreshes():
    client, channel = _client()
    bus = EventBus()
    router = EventRouter(bus)
    client.attach(bus)
    updates = []
    client.add_listener(updates.append)
    router.route(parse_record({"event": "variables_comm_open", "comm_id": "vars-9", "target_name": "positron.variables"}))
    bus.pump()
    assert client.comm_id == "vars-9"
    assert channel.requests("list")
    assert updates[0].method == "refresh"
    client.detach()


def test_auto_refresh_can_be_disabled():
    client, channel = _client(auto_refresh=False)
    bus = EventBus()
    router = EventRouter(bus)
    client.attach(bus)
    router.route(parse_record({"event": "variables_comm_open", "comm_id": "vars-9"}))
    bus.pump()
    assert client.comm_id == "vars-9"
    assert channel.sent == []
