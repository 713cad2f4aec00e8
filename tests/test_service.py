import asyncio
import errno
import logging
import os
import signal

from portdump import (
    ACCEPT_ERRORS_ISOLATE,
    CaptureSettings,
    ListenerManager,
    ListenerResult,
    Network,
    PortSpec,
    Service,
    Settings,
    ShutdownCoordinator,
)

LOG = logging.getLogger("portdump-service-test")


class FakeListener:
    def __init__(self, port, error=None, delay=0.0):
        self.spec = PortSpec(port, Network.TCP)
        self.address = f"127.0.0.1:{port}"
        self.error = error
        self.delay = delay
        self.bound = False

    async def bind(self):
        self.bound = True

    async def serve(self):
        if self.error is None:
            await asyncio.Event().wait()
        await asyncio.sleep(self.delay)
        return ListenerResult(self.spec, self.error)


def make_service(tmp_path, listeners, **kw):
    ports = tuple(str(l.spec.port) for l in listeners)
    svc = Service(Settings(targets=ports, logs=str(tmp_path), **kw), log=LOG)
    svc.listeners = listeners
    return svc


def emfile():
    return OSError(errno.EMFILE, "Too many open files")


def test_accept_error_is_fatal_by_default(tmp_path, caplog):
    listeners = [FakeListener(8001), FakeListener(8002, error=emfile())]
    svc = make_service(tmp_path, listeners)

    assert asyncio.run(svc.run()) == 1
    assert all(l.bound for l in listeners)
    assert "error accepting connection on tcp address '127.0.0.1:8002'" in caplog.text


def test_isolate_policy_keeps_other_listeners(tmp_path, caplog, capsys):
    caplog.set_level(logging.INFO)
    svc = make_service(
        tmp_path,
        [FakeListener(8001), FakeListener(8002, error=emfile())],
        accept_errors=ACCEPT_ERRORS_ISOLATE,
    )

    async def scenario():
        asyncio.get_running_loop().call_later(0.2, svc.shutdown.request_stop)
        return await svc.run()

    assert asyncio.run(scenario()) == 0
    assert "listener 8002/tcp closed, 1 still serving" in caplog.text
    assert capsys.readouterr().out.endswith("Shutting down ...\nDone.\n")


def test_isolate_policy_fails_when_nothing_is_left(tmp_path, caplog):
    svc = make_service(
        tmp_path,
        [FakeListener(8001, error=emfile()), FakeListener(8002, error=emfile(), delay=0.05)],
        accept_errors=ACCEPT_ERRORS_ISOLATE,
    )

    assert asyncio.run(svc.run()) == 1
    assert "no listeners left" in caplog.text


def test_shutdown_request_prints_two_lines(capsys):
    coordinator = ShutdownCoordinator()

    async def scenario():
        coordinator.request_stop()
        await coordinator.wait()

    asyncio.run(scenario())
    assert coordinator.stopping
    assert capsys.readouterr().out == "Shutting down ...\nDone.\n"


def test_sigterm_ends_service_with_zero(tmp_path, capsys):
    listener = ListenerManager(
        PortSpec(0, Network.TCP4), host="127.0.0.1", settings=CaptureSettings(logs_dir=str(tmp_path)), log=LOG
    )
    svc = make_service(tmp_path, [FakeListener(8001)])
    svc.listeners = [listener]

    async def scenario():
        asyncio.get_running_loop().call_later(0.2, os.kill, os.getpid(), signal.SIGTERM)
        return await svc.run()

    try:
        assert asyncio.run(scenario()) == 0
    finally:
        listener.close()
    assert capsys.readouterr().out == "Listening on 0/tcp4\nShutting down ...\nDone.\n"
