import os
import re
import urllib.parse

import h11

from simpletransfer import logger
from simpletransfer.common.target import ServeTarget
from simpletransfer.common.constants import UPLOAD_FIELD_NAME
from simpletransfer.common.exceptions import InvalidInput, TransferFailure
from simpletransfer.common.pathresolver import resolve_dir, resolve_file, relpath_from_root
from simpletransfer.listing import list_directory
from simpletransfer.templates import render_listing
from simpletransfer.transfer import open_download, MultipartStreamProcessor
from simpletransfer.protocol.httpserver import HTTPServerHandler, HTTPRequest


class FileTransferHandler(HTTPServerHandler):
    """
    The three routes of the file exchange: browse, download and upload.
    Every route takes the folder or file as the 'path' query parameter,
    relative to the served root.
    """
    def __init__(self, target:ServeTarget):
        super().__init__(target)
        self.routes = {
            ('GET', '/'): self.do_browse,
            ('GET', '/download'): self.do_download,
            ('POST', '/upload'): self.do_upload,
        }

    async def do_browse(self, request:HTTPRequest):
        directory = resolve_dir(self.target.root, request.get_query('path'))
        entries = list_directory(directory, self.target.root)
        rel = relpath_from_root(self.target.root, directory)
        body = render_listing(rel, entries, field_name=UPLOAD_FIELD_NAME).encode('utf-8')
        await self.send_response(200, body, headers=[("Cache-Control", b"no-store")])

    async def do_download(self, request:HTTPRequest):
        path = resolve_file(self.target.root, request.get_query('path'))
        download = open_download(path, self.target.download_chunk_size)

        headers = self.basic_headers()
        headers.append(("Content-Type", b"application/octet-stream"))
        headers.append(("Content-Length", str(download.size).encode('ascii')))
        headers.append(("Content-Disposition", download.content_disposition().encode('ascii')))

        logger.info('[DOWNLOAD] %s -> %s (%s bytes)' % (relpath_from_root(self.target.root, path), self._wrapper.stream.get_peer(), download.size))
        sent = 0
        try:
            await self._wrapper.send(h11.Response(status_code=200, headers=headers))
            async for chunk in download.chunks():
                # the file may grow while it is being sent, Content-Length is already out
                if sent + len(chunk) > download.size:
                    chunk = chunk[:download.size - sent]
                if chunk:
                    await self._wrapper.send(h11.Data(data=chunk))
                    sent += len(chunk)
                if sent >= download.size:
                    break
            if sent < download.size:
                raise TransferFailure('File "%s" shrank while being sent' % download.filename)
            await self._wrapper.send(h11.EndOfMessage())
        except (OSError, h11.LocalProtocolError) as e:
            raise TransferFailure('Download of "%s" interrupted after %s bytes: %s' % (download.filename, sent, e))

    async def do_upload(self, request:HTTPRequest):
        rel = request.get_query('path')
        target_dir = resolve_dir(self.target.root, rel)
        if os.path.exists(target_dir) and not os.path.isdir(target_dir):
            raise InvalidInput('Upload target "%s" is not a directory' % rel)

        content_type = request.get_header(b'content-type', '')
        if not content_type.lower().startswith('multipart/form-data'):
            raise InvalidInput('Only multipart/form-data uploads are supported')

        boundary_match = re.search(r'boundary=("[^"]+"|[^;\s]+)', content_type, re.IGNORECASE)
        if not boundary_match:
            raise InvalidInput('Missing boundary in Content-Type')
        boundary = boundary_match.group(1).strip('"')
        try:
            boundary = boundary.encode('ascii')
        except UnicodeEncodeError:
            raise InvalidInput('Invalid multipart boundary')

        processor = MultipartStreamProcessor(
            boundary,
            target_dir,
            field_name = UPLOAD_FIELD_NAME,
            max_file_size = self.target.max_body_size,
        )
        try:
            async for chunk in self._wrapper.body(self.target.max_body_size):
                await processor.process_chunk(chunk)
            result = await processor.finalize()
        finally:
            await processor.cleanup()

        canonical = relpath_from_root(self.target.root, target_dir)
        logger.info('[UPLOAD] %s <- %s (%s bytes)' % (
            '/'.join(p for p in [canonical, result['filename']] if p),
            self._wrapper.stream.get_peer(),
            result['size']
        ))
        await self.send_redirect('/?path=%s' % urllib.parse.quote(canonical, safe='/'))
