"""
Server lifecycle

FileServer is an owned handle around one HTTPServer. Several instances can
live in the same process, each serving its own root on its own port.
"""

import enum
import asyncio

from simpletransfer import logger
from simpletransfer.common.target import ServeTarget
from simpletransfer.common.constants import DEFAULT_LISTEN_IP, MAX_BODY_SIZE, SOCKET_BUFFER_SIZE, \
    DOWNLOAD_CHUNK_SIZE, READ_TIMEOUT, GRACE_PERIOD
from simpletransfer.common.exceptions import SimpleTransferError
from simpletransfer.protocol.httpserver import HTTPServer
from simpletransfer.handler import FileTransferHandler


class ServerState(enum.Enum):
    STOPPED = 'STOPPED'
    STARTING = 'STARTING'
    RUNNING = 'RUNNING'
    STOPPING = 'STOPPING'


class FileServer:
    def __init__(self, ip:str = DEFAULT_LISTEN_IP, max_body_size:int = MAX_BODY_SIZE, grace_period:float = GRACE_PERIOD, buffer_size:int = SOCKET_BUFFER_SIZE, download_chunk_size:int = DOWNLOAD_CHUNK_SIZE, read_timeout:float = READ_TIMEOUT):
        self.ip = ip
        self.max_body_size = max_body_size
        self.grace_period = grace_period
        self.buffer_size = buffer_size
        self.download_chunk_size = download_chunk_size
        self.read_timeout = read_timeout

        self.__state = ServerState.STOPPED
        self.__target = None
        self.__http = None
        # created on first use so they belong to the loop that runs the server
        self.__lock = None
        self.__stopped_evt = None

    def __get_lock(self):
        if self.__lock is None:
            self.__lock = asyncio.Lock()
            self.__stopped_evt = asyncio.Event()
            self.__stopped_evt.set()
        return self.__lock

    @property
    def state(self) -> ServerState:
        return self.__state

    @property
    def target(self) -> ServeTarget:
        return self.__target

    @property
    def url(self):
        """Base URL of the running server, None when it is not running"""
        if self.__state != ServerState.RUNNING or self.__target is None:
            return None
        sockname = self.__http.get_sockname() if self.__http is not None else None
        if sockname is not None and self.__target.ip not in ['0.0.0.0', '::']:
            return self.__target.get_url(sockname[0])
        return self.__target.get_url()

    async def wait_stopped(self):
        if self.__stopped_evt is None:
            # never started
            return
        await self.__stopped_evt.wait()

    async def start(self, root_directory:str, port:int):
        """
        Creates the root if needed and starts listening.

        Returns:
            tuple: (True, None) on success, (False, error) otherwise.
            The error is InvalidInput for a bad root or port, BindFailure when
            the socket can not be bound. Starting a running server is a no-op.
        """
        async with self.__get_lock():
            if self.__state == ServerState.RUNNING:
                logger.debug('[LIFECYCLE] Already running on %s, start ignored' % self.url)
                return True, None

            self.__state = ServerState.STARTING
            try:
                target = ServeTarget(
                    root_directory,
                    port,
                    ip = self.ip,
                    max_body_size = self.max_body_size,
                    buffer_size = self.buffer_size,
                    download_chunk_size = self.download_chunk_size,
                    read_timeout = self.read_timeout,
                    grace_period = self.grace_period,
                )
                http = HTTPServer(lambda: FileTransferHandler(target), target)
                _, err = await http.listen()
                if err is not None:
                    raise err
            except SimpleTransferError as e:
                logger.info('[LIFECYCLE] Start failed: %s' % e)
                self.__state = ServerState.STOPPED
                return False, e
            except Exception as e:
                logger.exception('[LIFECYCLE] Start failed')
                self.__state = ServerState.STOPPED
                return False, e

            self.__target = target
            self.__http = http
            self.__stopped_evt.clear()
            self.__state = ServerState.RUNNING
            logger.info('[LIFECYCLE] Serving %s on %s' % (target.root, self.url))
            return True, None

    async def stop(self):
        """
        Stops accepting, lets in-flight requests finish for up to grace_period
        seconds and releases the socket. Safe to call in any state.

        Returns:
            tuple: (True, None)
        """
        async with self.__get_lock():
            if self.__state != ServerState.RUNNING:
                return True, None

            self.__state = ServerState.STOPPING
            try:
                await self.__http.terminate(self.grace_period)
            except Exception:
                logger.exception('[LIFECYCLE] Error while stopping')
            finally:
                self.__http = None
                self.__state = ServerState.STOPPED
                self.__stopped_evt.set()
            logger.info('[LIFECYCLE] Stopped serving %s' % self.__target.root)
            return True, None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()


async def serve_directory(root_directory:str, port:int, **kwargs):
    """
    Starts a FileServer and hands it to the caller, who stops it with stop().
    Keyword arguments go to the FileServer constructor.

    Returns:
        tuple: (FileServer, None) or (None, error)
    """
    server = FileServer(**kwargs)
    _, err = await server.start(root_directory, port)
    if err is not None:
        return None, err
    return server, None
