import os
import ipaddress

from simpletransfer.common.exceptions import InvalidInput
from simpletransfer.common.constants import DEFAULT_LISTEN_IP, MAX_BODY_SIZE, MIN_BODY_SIZE, \
	SOCKET_BUFFER_SIZE, DOWNLOAD_CHUNK_SIZE, READ_TIMEOUT, GRACE_PERIOD


class ServeTarget:
	"""
	Everything one running server instance needs to know: what to serve and where to listen.
	The root is created if missing and always stored in canonical form.
	"""
	def __init__(self, root:str, port:int, ip:str = DEFAULT_LISTEN_IP, max_body_size:int = MAX_BODY_SIZE, buffer_size:int = SOCKET_BUFFER_SIZE, download_chunk_size:int = DOWNLOAD_CHUNK_SIZE, read_timeout:int = READ_TIMEOUT, grace_period:int = GRACE_PERIOD):
		self.port = ServeTarget.check_port(port)
		self.ip = None
		self.hostname = None
		self.max_body_size = max_body_size
		self.buffer_size = buffer_size
		self.download_chunk_size = download_chunk_size
		self.read_timeout = read_timeout
		self.grace_period = grace_period

		if ip is None or ip == '':
			ip = DEFAULT_LISTEN_IP
		try:
			self.ip = str(ipaddress.ip_address(ip))
		except ValueError:
			self.hostname = ip

		if self.max_body_size is None or self.max_body_size < MIN_BODY_SIZE:
			raise InvalidInput('max_body_size must be at least %s bytes, got %s' % (MIN_BODY_SIZE, self.max_body_size))

		self.root = ServeTarget.prepare_root(root)

	@staticmethod
	def check_port(port) -> int:
		if isinstance(port, bool):
			raise InvalidInput('Port must be an integer, got %r' % port)
		try:
			port = int(port)
		except (TypeError, ValueError):
			raise InvalidInput('Port must be an integer, got %r' % port)
		if port < 1 or port > 65535:
			raise InvalidInput('Port must be between 1 and 65535, got %s' % port)
		return port

	@staticmethod
	def prepare_root(root:str) -> str:
		if root is None or str(root).strip() == '':
			raise InvalidInput('Root directory must be specified')

		root = os.path.abspath(os.path.expanduser(str(root)))
		try:
			os.makedirs(root, exist_ok=True)
		except OSError as e:
			raise InvalidInput('Root directory "%s" can not be created: %s' % (root, e))
		root = os.path.realpath(root)
		if not os.path.isdir(root):
			raise InvalidInput('Root path "%s" is not a directory' % root)
		return root

	def get_ip_or_hostname(self):
		if self.ip is not None:
			return self.ip
		return self.hostname

	def get_url(self, host:str = None):
		if host is None:
			host = self.get_ip_or_hostname()
			if host in ['0.0.0.0', '::']:
				host = '127.0.0.1'
		if host.find(':') != -1:
			host = '[%s]' % host
		return 'http://%s:%s/' % (host, self.port)

	def __str__(self):
		t = '==== ServeTarget ====\r\n'
		for k in self.__dict__:
			t += '%s: %s\r\n' % (k, self.__dict__[k])
		return t
