import asyncio
import datetime
import email.utils
import urllib.parse

import h11

from simpletransfer import logger
from simpletransfer._version import __version__
from simpletransfer.common.target import ServeTarget
from simpletransfer.common.connection import UniConnection
from simpletransfer.common.constants import MAX_DISCARD_SIZE
from simpletransfer.common.exceptions import SimpleTransferError, PayloadTooLarge, TransferFailure, \
    PathTraversalRejected
from simpletransfer.server import UniServer
from simpletransfer.templates import render_error


class HTTPConnectionWrapper:
    """Drives one h11 server connection on top of a UniConnection"""

    def __init__(self, client_id, stream:UniConnection, read_timeout=None):
        self.client_id = client_id
        self.stream = stream
        self.read_timeout = read_timeout
        self.conn = h11.Connection(h11.SERVER)
        self.ident = " ".join(
            ["simpletransfer/%s" % __version__, h11.PRODUCT_ID]
        ).encode("ascii")
        # set while a request is being handled, stop() leaves these alone for the grace period
        self.busy = False
        # the request body could not be read to the end, the connection can not be reused
        self.broken = False

    async def send(self, event):
        # ConnectionClosed is never sent, closing goes through shutdown_and_clean_up
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        try:
            await self.stream.write(data)
        except BaseException:
            self.conn.send_failed()
            raise

    async def _read_from_peer(self):
        if self.conn.they_are_waiting_for_100_continue:
            logger.debug('[HTTP][%s] Sending 100 Continue' % self.client_id)
            go_ahead = h11.InformationalResponse(
                status_code=100, headers=self.basic_headers()
            )
            await self.send(go_ahead)
        try:
            data = await self.stream.read_one()
        except (OSError, asyncio.IncompleteReadError) as exc:
            logger.debug('[HTTP][%s] Error reading from peer: %s' % (self.client_id, exc))
            # they've stopped talking, h11 turns this into ConnectionClosed or a protocol error
            data = b""
        self.conn.receive_data(data)

    async def next_event(self, timeout=None):
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                if timeout is None:
                    await self._read_from_peer()
                else:
                    await asyncio.wait_for(self._read_from_peer(), timeout=timeout)
                continue
            return event

    async def body(self, max_size=None):
        """
        Yields the request body as it arrives.

        Raises:
            PayloadTooLarge: more than max_size bytes were sent
            TransferFailure: the peer disconnected, stalled longer than read_timeout or sent garbage
        """
        received = 0
        while True:
            try:
                event = await self.next_event(self.read_timeout)
            except asyncio.TimeoutError:
                self.broken = True
                raise TransferFailure('Timed out waiting for the request body')
            except h11.RemoteProtocolError as e:
                self.broken = True
                raise TransferFailure('Request body interrupted: %s' % e)

            if type(event) is h11.Data:
                received += len(event.data)
                if max_size is not None and received > max_size:
                    raise PayloadTooLarge(received, max_size)
                yield bytes(event.data)
                continue
            if type(event) is h11.EndOfMessage:
                return

            self.broken = True
            raise TransferFailure('Unexpected event while reading the request body: %s' % type(event).__name__)

    async def discard_body(self, limit=MAX_DISCARD_SIZE):
        """
        Reads and drops the rest of the request body so the connection can be reused.
        Returns False if the body is longer than limit or could not be read.
        """
        if self.conn.their_state is not h11.SEND_BODY:
            return self.conn.their_state is h11.DONE
        if self.conn.they_are_waiting_for_100_continue:
            # no body was sent yet, the client still waits for our go-ahead
            return False
        try:
            async for _ in self.body(limit):
                pass
        except SimpleTransferError:
            return False
        return True

    async def shutdown_and_clean_up(self):
        await self.stream.close()

    def basic_headers(self):
        # HTTP requires these headers in all responses
        return [
            ("Date", self.format_date_time().encode("ascii")),
            ("Server", self.ident),
        ]

    def format_date_time(self, dt=None):
        """Generate a RFC 7231 / RFC 9110 IMF-fixdate string"""
        if dt is None:
            dt = datetime.datetime.now(datetime.timezone.utc)
        return email.utils.format_datetime(dt, usegmt=True)


class HTTPRequest:
    """The parts of an h11.Request the handlers work with"""
    def __init__(self, event:h11.Request):
        self.event = event
        self.method = event.method.decode('ascii')
        self.target = event.target.decode('ascii', errors='replace')
        url_parts = urllib.parse.urlsplit(self.target)
        self.path = urllib.parse.unquote(url_parts.path) or '/'
        self.query = urllib.parse.parse_qs(url_parts.query, keep_blank_values=True)

    def get_query(self, name, default=''):
        values = self.query.get(name)
        if not values:
            return default
        return values[0]

    def get_header(self, name:bytes, default=None):
        name = name.lower()
        for hname, value in self.event.headers:
            if hname == name:
                return value.decode('latin-1')
        return default

    def get_content_length(self):
        value = self.get_header(b'content-length')
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None


class HTTPServerHandler:
    """
    Base class for request handlers. Subclasses fill self.routes with
    (method, path) -> coroutine function entries.
    """
    def __init__(self, target:ServeTarget):
        self.target = target
        self._wrapper:HTTPConnectionWrapper = None
        self.routes = {}

    def basic_headers(self):
        return self._wrapper.basic_headers()

    def response_started(self):
        return self._wrapper.conn.our_state is not h11.SEND_RESPONSE

    async def _process_request(self, wrapper:HTTPConnectionWrapper, event:h11.Request):
        self._wrapper = wrapper
        request = HTTPRequest(event)
        logger.debug('[HTTP][%s] %s %s' % (wrapper.client_id, request.method, request.target))

        try:
            func = self.routes.get((request.method, request.path))
            if func is None:
                return await self._serve_error(404, 'Not Found', 'No route for %s %s' % (request.method, request.path))

            content_length = request.get_content_length()
            if content_length is not None and content_length > self.target.max_body_size:
                raise PayloadTooLarge(content_length, self.target.max_body_size)

            await func(request)

        except SimpleTransferError as e:
            if isinstance(e, PathTraversalRejected):
                logger.info('[HTTP][%s] Rejected path "%s" from %s' % (wrapper.client_id, e.path, wrapper.stream.get_peer()))
            elif isinstance(e, TransferFailure):
                logger.warning('[HTTP][%s] %s %s failed: %s' % (wrapper.client_id, request.method, request.target, e))
            else:
                logger.info('[HTTP][%s] %s %s -> %s %s' % (wrapper.client_id, request.method, request.target, e.status_code, e))
            if self.response_started() or wrapper.broken:
                raise
            await self._serve_error(e.status_code, None, e.message)

        except Exception as e:
            logger.exception('[HTTP][%s] Unhandled error on %s %s' % (wrapper.client_id, request.method, request.target))
            if self.response_started() or wrapper.broken:
                raise
            await self._serve_error(500, None, 'Internal Server Error')

    async def send_response(self, status_code, body:bytes, content_type='text/html; charset=utf-8', headers=None, close=False):
        all_headers = self.basic_headers()
        all_headers.append(("Content-Type", content_type.encode('ascii')))
        all_headers.append(("Content-Length", str(len(body)).encode('ascii')))
        if headers is not None:
            all_headers.extend(headers)
        if close is True:
            all_headers.append(("Connection", b"close"))
        await self._wrapper.send(h11.Response(status_code=status_code, headers=all_headers))
        if body:
            await self._wrapper.send(h11.Data(data=body))
        await self._wrapper.send(h11.EndOfMessage())

    async def send_redirect(self, location:str, status_code=303):
        body = ('<html><body><a href="%s">Continue</a></body></html>' % location).encode('utf-8')
        await self.send_response(status_code, body, headers=[("Location", location.encode('ascii'))])

    async def _serve_error(self, status_code, reason, message):
        if reason is None:
            reason = status_reason(status_code)
        body = render_error(status_code, reason, message).encode('utf-8')
        # the unread request body has to go before the connection can carry another request
        drained = await self._wrapper.discard_body(MAX_DISCARD_SIZE)
        await self.send_response(status_code, body, close=not drained)


def status_reason(status_code):
    return {
        400: 'Bad Request',
        404: 'Not Found',
        405: 'Method Not Allowed',
        413: 'Payload Too Large',
        500: 'Internal Server Error',
    }.get(status_code, 'Error')


class HTTPServer:
    def __init__(self, client_handler, target:ServeTarget):
        self.target = target
        self.client_handler = client_handler

        self.server = None
        self.clients = {}
        self.id_counter = 0
        self.stopping = False
        self.__main_task = None

    async def __aenter__(self):
        _, err = await self.listen()
        if err is not None:
            raise err
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.terminate()

    def get_sockname(self):
        if self.server is None:
            return None
        return self.server.get_sockname()

    async def listen(self):
        """Binds the listening socket and starts accepting in the background"""
        self.server = UniServer(self.target)
        _, err = await self.server.bind()
        if err is not None:
            self.server = None
            return False, err
        self.__main_task = asyncio.create_task(self.serve())
        return True, None

    async def terminate(self, grace_period=None):
        """
        Stops accepting, closes idle keep-alive connections, gives in-flight
        requests grace_period seconds, then cancels what is left.
        """
        if grace_period is None:
            grace_period = self.target.grace_period
        self.stopping = True

        if self.server is not None:
            await self.server.close()
        if self.__main_task is not None:
            await self.__main_task
            self.__main_task = None

        busy = []
        for wrapper, task in list(self.clients.values()):
            if wrapper.busy is True:
                busy.append(task)
            else:
                task.cancel()

        if len(busy) > 0:
            logger.info('[HTTP] Waiting up to %ss for %s request(s) to finish' % (grace_period, len(busy)))
            _, pending = await asyncio.wait(busy, timeout=grace_period)
            for task in pending:
                task.cancel()

        remaining = [task for _, task in list(self.clients.values())]
        if len(remaining) > 0:
            await asyncio.gather(*remaining, return_exceptions=True)
        self.clients = {}

        if self.server is not None:
            await self.server.wait_closed()
            self.server = None

    async def __handle_connection(self, client_id, wrapper:HTTPConnectionWrapper):
        handler = self.client_handler()
        conn = wrapper.conn
        logger.debug('[HTTP] New client %s from %s' % (client_id, wrapper.stream.get_peer()))
        try:
            while True:
                if conn.states == {h11.CLIENT: h11.CLOSED, h11.SERVER: h11.CLOSED}:
                    break
                if conn.their_state is h11.MUST_CLOSE or conn.our_state is h11.MUST_CLOSE:
                    break
                if h11.ERROR in (conn.our_state, conn.their_state):
                    break

                if conn.states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
                    if self.stopping is True:
                        break
                    conn.start_next_cycle()
                    continue

                if conn.states == {h11.CLIENT: h11.SEND_BODY, h11.SERVER: h11.DONE}:
                    # response went out before the body was read
                    if await wrapper.discard_body(MAX_DISCARD_SIZE) is False:
                        break
                    continue

                if conn.states != {h11.CLIENT: h11.IDLE, h11.SERVER: h11.IDLE}:
                    logger.debug('[HTTP][%s] Unexpected connection state %s' % (client_id, conn.states))
                    break

                try:
                    event = await wrapper.next_event()
                except h11.RemoteProtocolError as e:
                    logger.info('[HTTP][%s] Malformed request from %s: %s' % (client_id, wrapper.stream.get_peer(), e))
                    await self.__send_protocol_error(wrapper, e)
                    break

                if type(event) is h11.Request:
                    wrapper.busy = True
                    try:
                        await handler._process_request(wrapper, event)
                    finally:
                        wrapper.busy = False
                    continue
                if type(event) is h11.ConnectionClosed:
                    break
                logger.debug('[HTTP][%s] Unexpected event %s' % (client_id, type(event).__name__))
                break

        except asyncio.CancelledError:
            logger.debug('[HTTP][%s] Connection handler cancelled' % client_id)
        except Exception as e:
            # the failure itself was already logged by the handler, only the connection is lost
            logger.debug('[HTTP][%s] Dropping connection: %s' % (client_id, e))
        finally:
            await wrapper.shutdown_and_clean_up()

    async def __send_protocol_error(self, wrapper:HTTPConnectionWrapper, exc:h11.RemoteProtocolError):
        if wrapper.conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
            return
        status_code = exc.error_status_hint
        body = render_error(status_code, status_reason(status_code), str(exc)).encode('utf-8')
        headers = wrapper.basic_headers()
        headers.append(("Content-Type", b"text/html; charset=utf-8"))
        headers.append(("Content-Length", str(len(body)).encode('ascii')))
        headers.append(("Connection", b"close"))
        try:
            await wrapper.send(h11.Response(status_code=status_code, headers=headers))
            await wrapper.send(h11.Data(data=body))
            await wrapper.send(h11.EndOfMessage())
        except (OSError, h11.LocalProtocolError) as e:
            logger.debug('[HTTP][%s] Could not send error response: %s' % (wrapper.client_id, e))

    async def serve(self):
        async for connection in self.server.serve():
            if self.stopping is True:
                await connection.close()
                continue
            client_id = self.id_counter
            self.id_counter += 1
            wrapper = HTTPConnectionWrapper(client_id, connection, self.target.read_timeout)
            task = asyncio.create_task(self.__handle_connection(client_id, wrapper))
            self.clients[client_id] = (wrapper, task)
            task.add_done_callback(lambda _, cid=client_id: self.clients.pop(cid, None))
