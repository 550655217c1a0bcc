"""
File transfer primitives

Downloads are read in fixed size chunks and uploads are written through a
temporary file in the target directory, so neither direction ever holds a
whole file in memory. The multipart processor finds boundaries across chunk
edges and streams the single "file" part straight into an UploadSink.
"""

import os
import re
import tempfile
import urllib.parse

from simpletransfer import logger
from simpletransfer.common.constants import DOWNLOAD_CHUNK_SIZE, MAX_PART_HEADER_SIZE, UPLOAD_FIELD_NAME, \
    UPLOAD_TEMP_PREFIX, UPLOAD_TEMP_SUFFIX
from simpletransfer.common.exceptions import InvalidInput, NotFound, PayloadTooLarge, TransferFailure
from simpletransfer.common.pathresolver import is_within, is_upload_temp


class FileDownload:
    """An existing regular file, ready to be streamed"""

    def __init__(self, path, chunk_size=DOWNLOAD_CHUNK_SIZE):
        self.path = path
        self.chunk_size = chunk_size
        self.filename = os.path.basename(path)
        self.size = os.path.getsize(path)

    def content_disposition(self):
        """
        Attachment header carrying only the base name. Non ASCII names get an
        RFC 6266 filename* parameter next to an ASCII fallback.
        """
        fallback = self.filename.encode('ascii', 'replace').decode('ascii')
        fallback = fallback.replace('\\', '_').replace('"', '_')
        fallback = re.sub(r'[\x00-\x1f\x7f]', '_', fallback)
        quoted = urllib.parse.quote(self.filename, safe='')
        return 'attachment; filename="%s"; filename*=UTF-8\'\'%s' % (fallback, quoted)

    async def chunks(self):
        with open(self.path, 'rb') as f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk


def open_download(path, chunk_size=DOWNLOAD_CHUNK_SIZE):
    """
    Args:
        path (str): Resolved absolute path of the requested file

    Raises:
        NotFound: path is not an existing regular file
    """
    if not os.path.isfile(path) or is_upload_temp(os.path.basename(path)):
        raise NotFound('File not found')
    try:
        return FileDownload(path, chunk_size)
    except OSError:
        raise NotFound('File not found')


def sanitize_filename(filename):
    """
    Keeps only the base name of an uploaded file name.
    Browsers on Windows may send full paths, so both separators are stripped.
    """
    if filename is None:
        raise InvalidInput('Missing file name')

    safe_name = filename.replace('\\', '/').split('/')[-1].strip()
    if safe_name in ['', '.', '..'] or safe_name.find('\x00') != -1:
        raise InvalidInput('Invalid or unsafe filename: %r' % filename)
    if is_upload_temp(safe_name):
        raise InvalidInput('Reserved filename: %r' % filename)
    return safe_name


class UploadSink:
    """
    Receives the content of one uploaded file.
    Data goes to a temporary file next to the destination, commit() moves it
    in place (overwriting), abort() throws it away. The temporary name has a
    fixed length so any name the filesystem accepts can be uploaded.
    """

    def __init__(self, target_dir, incoming_name, max_size=None):
        self.target_dir = target_dir
        self.filename = sanitize_filename(incoming_name)
        self.final_path = os.path.join(target_dir, self.filename)
        if not is_within(target_dir, os.path.abspath(self.final_path)):
            raise InvalidInput('Invalid or unsafe filename: %r' % incoming_name)
        self.max_size = max_size
        self.temp_path = None
        self.handle = None
        self.size = 0

    def open(self):
        if os.path.exists(self.target_dir) and not os.path.isdir(self.target_dir):
            raise InvalidInput('Upload target is not a directory')
        try:
            os.makedirs(self.target_dir, exist_ok=True)
            fd, self.temp_path = tempfile.mkstemp(prefix=UPLOAD_TEMP_PREFIX, suffix=UPLOAD_TEMP_SUFFIX, dir=self.target_dir)
        except OSError as e:
            raise TransferFailure('Can not create upload file in "%s": %s' % (self.target_dir, e))
        self.handle = os.fdopen(fd, 'wb')
        return self

    def write(self, data):
        if self.handle is None:
            self.open()
        if not data:
            return
        new_size = self.size + len(data)
        if self.max_size is not None and new_size > self.max_size:
            raise PayloadTooLarge(new_size, self.max_size)
        try:
            self.handle.write(data)
        except OSError as e:
            raise TransferFailure('Error writing "%s": %s' % (self.filename, e))
        self.size = new_size

    def commit(self):
        if self.handle is None:
            self.open()
        self.handle.close()
        self.handle = None
        if self.size == 0:
            self.abort()
            raise InvalidInput('Uploaded file "%s" is empty' % self.filename)
        try:
            os.replace(self.temp_path, self.final_path)
        except OSError as e:
            self.abort()
            raise TransferFailure('Error storing "%s": %s' % (self.filename, e))
        self.temp_path = None
        return {
            'filename': self.filename,
            'size': self.size,
            'path': self.final_path,
        }

    def abort(self):
        if self.handle is not None:
            try:
                self.handle.close()
            except OSError:
                pass
            self.handle = None
        if self.temp_path is not None:
            try:
                os.unlink(self.temp_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning('[UPLOAD] Could not remove partial upload %s: %s' % (self.temp_path, e))
            self.temp_path = None


async def save_upload(target_dir, incoming_name, chunks, max_size=None):
    """
    Stores the async iterable chunks as incoming_name inside target_dir.

    Returns:
        dict: filename, size and final path of the stored file
    """
    sink = UploadSink(target_dir, incoming_name, max_size)
    try:
        async for chunk in chunks:
            sink.write(chunk)
        return sink.commit()
    finally:
        sink.abort()


class MultipartStreamProcessor:
    """
    Incremental multipart/form-data parser.

    Only the first part named field_name that carries a filename is stored,
    every other part is skipped. The state machine goes
    'preamble' -> 'delimiter' -> 'headers' -> 'body' -> 'delimiter' ... -> 'epilogue'.
    """

    def __init__(self, boundary, target_dir, field_name=UPLOAD_FIELD_NAME, max_file_size=None):
        if isinstance(boundary, str):
            boundary = boundary.encode('ascii')
        self.target_dir = target_dir
        self.field_name = field_name
        self.max_file_size = max_file_size

        self.delimiter = b'--' + boundary
        self.body_delimiter = b'\r\n' + self.delimiter

        self.buffer = b''
        self.state = 'preamble'
        self.sink = None
        self.skipping = False
        self.result = None

    async def process_chunk(self, chunk):
        self.buffer += chunk
        while True:
            if self.state == 'preamble':
                if not self._process_preamble():
                    break
            elif self.state == 'delimiter':
                if not self._process_delimiter():
                    break
            elif self.state == 'headers':
                if not self._process_headers():
                    break
            elif self.state == 'body':
                if not self._process_body():
                    break
            else:
                # epilogue, whatever follows the closing boundary is ignored
                self.buffer = b''
                break

    def _process_preamble(self):
        pos = self.buffer.find(self.delimiter)
        if pos == -1:
            # keep enough to recognise a delimiter split across chunks
            keep = len(self.delimiter) - 1
            if len(self.buffer) > keep:
                self.buffer = self.buffer[-keep:]
            return False
        self.buffer = self.buffer[pos + len(self.delimiter):]
        self.state = 'delimiter'
        return True

    def _process_delimiter(self):
        if len(self.buffer) < 2:
            return False
        if self.buffer.startswith(b'--'):
            self.state = 'epilogue'
            return True
        if self.buffer.startswith(b'\r\n'):
            self.buffer = self.buffer[2:]
            self.state = 'headers'
            return True
        # transport padding is allowed before the CRLF
        line_end = self.buffer.find(b'\r\n')
        if line_end == -1:
            if len(self.buffer) > 1024:
                raise InvalidInput('Malformed multipart delimiter')
            return False
        if self.buffer[:line_end].strip(b' \t') != b'':
            raise InvalidInput('Malformed multipart delimiter')
        self.buffer = self.buffer[line_end + 2:]
        self.state = 'headers'
        return True

    def _process_headers(self):
        header_end = self.buffer.find(b'\r\n\r\n')
        if header_end == -1:
            if len(self.buffer) > MAX_PART_HEADER_SIZE:
                raise InvalidInput('Multipart headers too long or malformed')
            return False
        if header_end > MAX_PART_HEADER_SIZE:
            raise InvalidInput('Multipart part headers too long')

        header_section = self.buffer[:header_end]
        self.buffer = self.buffer[header_end + 4:]
        try:
            headers_text = header_section.decode('utf-8')
        except UnicodeDecodeError:
            headers_text = header_section.decode('latin-1')

        name, filename = self._parse_content_disposition(headers_text)
        self.skipping = True
        if name == self.field_name and filename is not None and self.result is None and self.sink is None:
            self.sink = UploadSink(self.target_dir, filename, self.max_file_size).open()
            self.skipping = False
            logger.debug('[UPLOAD] Receiving "%s" into %s' % (self.sink.filename, self.target_dir))
        self.state = 'body'
        return True

    def _process_body(self):
        pos = self.buffer.find(self.body_delimiter)
        if pos == -1:
            keep = len(self.body_delimiter) - 1
            if len(self.buffer) > keep:
                self._write(self.buffer[:-keep])
                self.buffer = self.buffer[-keep:]
            return False

        self._write(self.buffer[:pos])
        self.buffer = self.buffer[pos + len(self.body_delimiter):]
        if self.skipping is False:
            self.result = self.sink.commit()
            self.sink = None
        self.skipping = False
        self.state = 'delimiter'
        return True

    def _write(self, data):
        if self.skipping is False and data:
            self.sink.write(data)

    @staticmethod
    def _parse_content_disposition(headers_text):
        name = None
        filename = None
        for line in headers_text.split('\r\n'):
            key, _, value = line.partition(':')
            if key.strip().lower() != 'content-disposition':
                continue
            m = re.search(r'(?:^|;)\s*name="([^"]*)"', value, re.IGNORECASE)
            if m is None:
                m = re.search(r'(?:^|;)\s*name=([^;\s]+)', value, re.IGNORECASE)
            if m is not None:
                name = m.group(1)
            m = re.search(r'(?:^|;)\s*filename\*=([^;\s]+)', value, re.IGNORECASE)
            if m is not None:
                _, _, encoded = m.group(1).partition("''")
                filename = urllib.parse.unquote(encoded, errors='replace')
                continue
            m = re.search(r'(?:^|;)\s*filename="([^"]*)"', value, re.IGNORECASE)
            if m is None:
                m = re.search(r'(?:^|;)\s*filename=([^;\s]+)', value, re.IGNORECASE)
            if m is not None:
                filename = m.group(1)
        return name, filename

    async def finalize(self):
        """
        Called once the request body ended.

        Returns:
            dict: info of the stored file

        Raises:
            InvalidInput: body was truncated, or the file part is missing
        """
        if self.state != 'epilogue':
            raise InvalidInput('Multipart body ended before the closing boundary')
        if self.result is None:
            raise InvalidInput('No "%s" field in the upload' % self.field_name)
        return self.result

    async def cleanup(self):
        if self.sink is not None:
            self.sink.abort()
            self.sink = None
