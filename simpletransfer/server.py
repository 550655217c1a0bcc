import asyncio

from simpletransfer import logger
from simpletransfer.common.target import ServeTarget
from simpletransfer.common.connection import UniConnection
from simpletransfer.common.exceptions import BindFailure


class UniServer:
	"""
	Owns the listening socket. Accepted connections are queued and
	handed out one by one through serve().
	"""
	def __init__(self, target:ServeTarget):
		self.target = target
		self.server = None
		self.connection_queue = asyncio.Queue()

	async def __handle_connection(self, reader, writer):
		connection = UniConnection(reader, writer, self.target.buffer_size)
		if self.server is None or not self.server.is_serving():
			await connection.close()
			return
		await self.connection_queue.put(connection)

	def get_sockname(self):
		if self.server is None or not self.server.sockets:
			return None
		return self.server.sockets[0].getsockname()

	async def bind(self):
		try:
			self.server = await asyncio.start_server(
				self.__handle_connection,
				self.target.get_ip_or_hostname(),
				self.target.port
			)
			logger.debug('[LISTENER] Listening on %s' % (self.get_sockname(),))
			return True, None
		except OSError as e:
			logger.debug('[LISTENER] Bind to %s:%s failed. Reason: %s' % (self.target.get_ip_or_hostname(), self.target.port, e))
			self.server = None
			return False, BindFailure(e)

	async def serve(self):
		if self.server is None:
			raise Exception('Listener is not bound!')

		while True:
			connection = await self.connection_queue.get()
			if connection is None:
				break
			yield connection

	async def close(self):
		if self.server is not None:
			self.server.close()
		await self.connection_queue.put(None)

	async def wait_closed(self, timeout = 5):
		# connections accepted after close() never reached a handler
		while not self.connection_queue.empty():
			connection = self.connection_queue.get_nowait()
			if connection is not None:
				await connection.close()

		if self.server is None:
			return
		try:
			await asyncio.wait_for(self.server.wait_closed(), timeout = timeout)
		except asyncio.TimeoutError:
			logger.debug('[LISTENER] Timeout while waiting for the listening socket to close')
		self.server = None
