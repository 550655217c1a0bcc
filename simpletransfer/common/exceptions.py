
class SimpleTransferError(Exception):
	status_code = 500

	def __init__(self, message = None):
		self.message = message if message is not None else self.__class__.__name__
		super().__init__(self.message)

class InvalidInput(SimpleTransferError):
	status_code = 400

class PathTraversalRejected(InvalidInput):
	def __init__(self, path, message = None):
		self.path = path
		if message is None:
			message = 'Path "%s" resolves outside of the served directory' % path
		super().__init__(message)

class NotFound(SimpleTransferError):
	status_code = 404

class PayloadTooLarge(SimpleTransferError):
	status_code = 413

	def __init__(self, size, limit):
		self.size = size
		self.limit = limit
		super().__init__('Request body too large: %s bytes (max: %s)' % (size, limit))

class TransferFailure(SimpleTransferError):
	status_code = 500

class BindFailure(SimpleTransferError):
	def __init__(self, innerexception, message = "Failed to bind the listening socket! See innerexception for more details"):
		self.innerexception = innerexception
		super().__init__('%s (%s)' % (message, innerexception))
