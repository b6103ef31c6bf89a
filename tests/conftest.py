import os
import shutil
import socket
import tempfile
from types import SimpleNamespace

import pytest

from fakes import FakeI3Server, FakeSession, client_message


@pytest.fixture
def short_tmp():
    # AF_UNIX paths are limited to ~108 bytes; pytest's tmp_path can be longer.
    path = tempfile.mkdtemp(prefix="wmsync-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def i3_server(short_tmp):
    server = FakeI3Server(os.path.join(short_tmp, "ipc.sock")).start()
    yield server
    server.stop()


@pytest.fixture
def wm(i3_server):
    """A fake WM: sessions + IPC server that emits the sync notification."""
    session = FakeSession()

    def on_sync(payload):
        session.push(client_message(payload["window"], [payload["window"], payload["rnd"]]))
        return {"success": True}

    i3_server.on_sync = on_sync
    return SimpleNamespace(session=session, server=i3_server, socket_path=i3_server.path)


@pytest.fixture
def dead_socket(short_tmp):
    path = os.path.join(short_tmp, "dead.sock")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(path)
    sock.close()  # bound but nobody listening: connect() is refused
    return path
