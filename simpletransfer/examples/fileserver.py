import os
import sys
import signal
import asyncio
import logging

from simpletransfer import logger
from simpletransfer._version import __banner__, __version__
from simpletransfer.common.constants import DEFAULT_PORT, DEFAULT_LISTEN_IP, MAX_BODY_SIZE, MIN_BODY_SIZE, GRACE_PERIOD
from simpletransfer.fileserver import FileServer


def get_parser():
	import argparse
	parser = argparse.ArgumentParser(
		description='Share a folder on the local network. Browse, download and upload from any browser.',
		formatter_class=argparse.RawDescriptionHelpFormatter,
		epilog='''
Examples:
  %(prog)s                               # serve ./SimpleTransfer on 0.0.0.0:5000
  %(prog)s /home/user/share -p 8080      # custom folder and port
  %(prog)s /home/user/share -H 127.0.0.1 # this machine only
''')
	parser.add_argument('directory', nargs='?', default=os.path.join('.', 'SimpleTransfer'), help='Directory to share, created if missing (default: ./SimpleTransfer)')
	parser.add_argument('-H', '--host', default = DEFAULT_LISTEN_IP, help='Listen IP (default: %s)' % DEFAULT_LISTEN_IP)
	parser.add_argument('-p', '--port', type = int, default = DEFAULT_PORT, help='Listen port (default: %s)' % DEFAULT_PORT)
	parser.add_argument('--max-body-size', type = int, default = MAX_BODY_SIZE, help='Largest accepted request body in bytes (default: 2GB)')
	parser.add_argument('--grace-period', type = float, default = GRACE_PERIOD, help='Seconds to wait for running transfers on shutdown')
	parser.add_argument('-v', '--verbose', action='count', default=0, help='Verbosity')
	parser.add_argument('-s', '--silent', action='store_true', help = 'dont print banner')
	parser.add_argument('--version', action='version', version='simpletransfer %s' % __version__)
	return parser

async def amain(args):
	if args.silent is False:
		print(__banner__)

	if args.verbose >=1:
		logger.setLevel(logging.DEBUG)

	server = FileServer(
		ip = args.host,
		max_body_size = args.max_body_size,
		grace_period = args.grace_period,
	)
	_, err = await server.start(args.directory, args.port)
	if err is not None:
		print('Failed to start server: %s' % err)
		return 1

	if args.silent is False:
		print('Serving %s' % server.target.root)
		print('Open %s in a browser on this network' % server.url)
		print('Press Ctrl+C to stop')

	stop_evt = asyncio.Event()
	loop = asyncio.get_running_loop()
	for signum in [signal.SIGINT, signal.SIGTERM]:
		try:
			loop.add_signal_handler(signum, stop_evt.set)
		except (NotImplementedError, RuntimeError):
			# windows event loops have no signal handlers, Ctrl+C arrives as KeyboardInterrupt
			pass

	try:
		await stop_evt.wait()
	finally:
		if args.silent is False:
			print('Stopping, waiting for running transfers...')
		await server.stop()
	return 0

def main():
	parser = get_parser()
	args = parser.parse_args()

	if args.port < 1 or args.port > 65535:
		print('Error: Port must be between 1 and 65535, got %s' % args.port)
		sys.exit(1)
	if args.max_body_size < MIN_BODY_SIZE:
		print('Error: max-body-size must be at least %s bytes, got %s' % (MIN_BODY_SIZE, args.max_body_size))
		sys.exit(1)

	try:
		sys.exit(asyncio.run(amain(args)))
	except KeyboardInterrupt:
		print('\nServer stopped by user')

if __name__ == '__main__':
	main()
