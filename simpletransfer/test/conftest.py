import os
import socket
import asyncio

import h11
import pytest
import pytest_asyncio

from simpletransfer.fileserver import FileServer


BOUNDARY = '----simpletransfer-test-7d93a1'


def get_free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def build_multipart(fields, boundary=BOUNDARY):
    """
    fields is a list of (name, filename, content) tuples, filename None for plain form fields.
    Returns (content_type, body)
    """
    body = b''
    for name, filename, content in fields:
        body += ('--%s\r\n' % boundary).encode('ascii')
        disposition = 'form-data; name="%s"' % name
        if filename is not None:
            disposition += '; filename="%s"' % filename
        body += ('Content-Disposition: %s\r\n' % disposition).encode('utf-8')
        if filename is not None:
            body += b'Content-Type: application/octet-stream\r\n'
        body += b'\r\n' + content + b'\r\n'
    body += ('--%s--\r\n' % boundary).encode('ascii')
    return 'multipart/form-data; boundary=%s' % boundary, body


class HTTPTestClient:
    """Minimal keep-alive capable h11 client"""
    def __init__(self, port):
        self.port = port
        self.reader = None
        self.writer = None
        self.conn = None

    async def connect(self):
        self.reader, self.writer = await asyncio.open_connection('127.0.0.1', self.port)
        self.conn = h11.Connection(h11.CLIENT)
        return self

    async def request(self, method, target, headers=None, body=b'', close=False):
        if self.conn.states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
            self.conn.start_next_cycle()

        all_headers = [('Host', '127.0.0.1:%s' % self.port)]
        if close is True:
            all_headers.append(('Connection', 'close'))
        if headers is not None:
            all_headers.extend(headers)
        if body or method == 'POST':
            all_headers.append(('Content-Length', str(len(body))))

        data = self.conn.send(h11.Request(method=method, target=target, headers=all_headers))
        if body:
            data += self.conn.send(h11.Data(data=body))
        data += self.conn.send(h11.EndOfMessage())
        self.writer.write(data)
        await self.writer.drain()

        status = None
        response_headers = {}
        chunks = []
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                self.conn.receive_data(await self.reader.read(65536))
                continue
            if type(event) is h11.InformationalResponse:
                continue
            if type(event) is h11.Response:
                status = event.status_code
                response_headers = dict(event.headers)
                continue
            if type(event) is h11.Data:
                chunks.append(bytes(event.data))
                continue
            break
        return status, response_headers, b''.join(chunks)

    async def close(self):
        if self.writer is None:
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass
        self.writer = None


async def http_request(port, method, target, headers=None, body=b''):
    client = await HTTPTestClient(port).connect()
    try:
        return await client.request(method, target, headers=headers, body=body, close=True)
    finally:
        await client.close()


@pytest.fixture
def root(tmp_path):
    return str(tmp_path / 'share')


@pytest.fixture
def free_port():
    return get_free_port()


@pytest_asyncio.fixture
async def running_server(root, free_port):
    server = FileServer(ip='127.0.0.1', grace_period=2, read_timeout=5)
    _, err = await server.start(root, free_port)
    assert err is None
    yield server
    await server.stop()


@pytest.fixture
def served_root(running_server):
    return running_server.target.root


def list_tree(path):
    found = []
    for dirpath, dirnames, filenames in os.walk(path):
        for name in filenames:
            found.append(os.path.relpath(os.path.join(dirpath, name), path).replace(os.sep, '/'))
    return sorted(found)
