
DEFAULT_PORT = 5000
DEFAULT_LISTEN_IP = '0.0.0.0'

# hard ceiling for a single request body (multipart envelope included)
MAX_BODY_SIZE = 2*1024*1024*1024
MIN_BODY_SIZE = 1024

SOCKET_BUFFER_SIZE = 64*1024
DOWNLOAD_CHUNK_SIZE = 512*1024

# seconds to wait for the next piece of a request body
READ_TIMEOUT = 30
# seconds stop() waits for in-flight requests before cancelling them
GRACE_PERIOD = 30

# error responses drain at most this much unread request body to keep the connection alive
MAX_DISCARD_SIZE = 1024*1024
MAX_PART_HEADER_SIZE = 8*1024

UPLOAD_FIELD_NAME = 'file'
APP_TITLE = 'Simple Data Transfer'

# in-progress uploads live under this reserved name pattern until they are committed
UPLOAD_TEMP_PREFIX = '.upload-'
UPLOAD_TEMP_SUFFIX = '.part'
