import itertools
import json
import threading
import time

import pytest

from labsys.kvsrv import Clerk, KVServer
from labsys.labrpc import Network, RPCFailed, Server, Service
from labsys.rpc import Err, GetArgs, PutArgs


def _setup(reliable=True):
    net = Network()
    net.reliable = reliable
    server = Server()
    server.add_service(Service(KVServer()))
    net.add_server("kv", server)
    return net


def _clerk(net, name, retry_interval=0.01):
    end = net.make_end(name)
    net.connect(name, "kv")
    net.enable(name, True)
    return Clerk(end, retry_interval)


@pytest.fixture
def net():
    network = _setup()
    yield network
    network.cleanup()


def test_server_get_missing_key():
    kv = KVServer()
    assert kv.get(GetArgs("k")).err == Err.NO_KEY


def test_server_put_creates_at_version_one():
    kv = KVServer()
    assert kv.put(PutArgs("k", "v", 0)).err == Err.OK
    reply = kv.get(GetArgs("k"))
    assert (reply.value, reply.version, reply.err) == ("v", 1, Err.OK)


def test_server_put_wrong_version():
    kv = KVServer()
    kv.put(PutArgs("k", "v", 0))
    assert kv.put(PutArgs("k", "w", 0)).err == Err.VERSION
    assert kv.put(PutArgs("k", "w", 1)).err == Err.OK
    reply = kv.get(GetArgs("k"))
    assert (reply.value, reply.version) == ("w", 2)


def test_server_put_missing_key_nonzero_version():
    kv = KVServer()
    assert kv.put(PutArgs("y", "v", 1)).err == Err.NO_KEY
    assert kv.get(GetArgs("y")).err == Err.NO_KEY


def test_reliable_put(net):
    val = "6.5840"
    ck = _clerk(net, "c0")
    assert ck.put("k", val, 0) == Err.OK
    assert ck.get("k") == (val, 1, Err.OK)
    assert ck.put("k", val, 0) == Err.VERSION
    assert ck.put("y", val, 1) == Err.NO_KEY
    assert ck.get("y")[2] == Err.NO_KEY


class _LosingEnd:
    """Runs requests on a server but loses the first ``lost`` replies."""

    def __init__(self, kv, lost):
        self.kv = kv
        self.lost = lost
        self.calls = 0

    def call(self, svc_meth, args):
        self.calls += 1
        method = getattr(self.kv, svc_meth.rpartition(".")[2])
        reply = method(args)
        if self.lost > 0:
            self.lost -= 1
            raise RPCFailed("reply lost")
        return reply


def test_put_resend_version_becomes_maybe():
    kv = KVServer()
    end = _LosingEnd(kv, lost=1)
    ck = Clerk(end, retry_interval=0)
    assert ck.put("k", "v", 0) == Err.MAYBE
    assert end.calls == 2
    assert kv.get(GetArgs("k")).version == 1


def test_put_first_version_error_is_version():
    kv = KVServer()
    kv.put(PutArgs("k", "v", 0))
    ck = Clerk(_LosingEnd(kv, lost=0), retry_interval=0)
    assert ck.put("k", "w", 0) == Err.VERSION


def test_get_retries_after_lost_reply():
    kv = KVServer()
    kv.put(PutArgs("k", "v", 0))
    end = _LosingEnd(kv, lost=2)
    ck = Clerk(end, retry_interval=0)
    assert ck.get("k") == ("v", 1, Err.OK)
    assert end.calls == 3


def test_put_concurrent_reliable(net):
    done = threading.Event()
    oks = []

    def client(me):
        ck = _clerk(net, f"c{me}")
        nok = 0
        while not done.is_set():
            _, ver, _ = ck.get("k")
            if ck.put("k", json.dumps([me, ver]), ver) == Err.OK:
                nok += 1
        oks.append(nok)

    threads = [threading.Thread(target=client, args=(i,)) for i in range(5)]
    for t in threads:
        t.start()
    time.sleep(0.5)
    done.set()
    for t in threads:
        t.join()
    ck = _clerk(net, "checker")
    value, ver, err = ck.get("k")
    assert err == Err.OK
    assert ver == sum(oks)
    assert json.loads(value)[1] == ver - 1


def test_unreliable_net():
    net = _setup(reliable=False)
    try:
        ck = _clerk(net, "c0")
        retried = False
        problems = []
        for attempt in range(100):
            for i in itertools.count():
                err = ck.put("k", json.dumps(i), attempt)
                if err != Err.MAYBE:
                    if i > 0 and err != Err.VERSION:
                        problems.append(err)
                    break
                retried = True
            value, ver, err = ck.get("k")
            assert err == Err.OK
            assert ver == attempt + 1
            assert json.loads(value) == 0
        assert problems == []
        assert retried
    finally:
        net.cleanup()