import os

import pytest

from simpletransfer.common.exceptions import InvalidInput, NotFound, PayloadTooLarge
from simpletransfer.transfer import sanitize_filename, UploadSink, save_upload, MultipartStreamProcessor, open_download

from conftest import build_multipart, BOUNDARY


@pytest.mark.parametrize('raw, expected', [
    ('song.wav', 'song.wav'),
    ('../../evil.txt', 'evil.txt'),
    ('C:\\Users\\me\\report.pdf', 'report.pdf'),
    ('/etc/passwd', 'passwd'),
    ('  spaced name.txt ', 'spaced name.txt'),
])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


@pytest.mark.parametrize('raw', ['', '   ', '.', '..', 'dir/', 'a/..', 'bad\x00name', None, '.upload-abc123.part'])
def test_sanitize_filename_rejects(raw):
    with pytest.raises(InvalidInput):
        sanitize_filename(raw)


def test_upload_sink_commit(tmp_path):
    target = str(tmp_path / 'recordings')
    sink = UploadSink(target, 'song.wav').open()
    sink.write(b'RIFF')
    sink.write(b'data')
    info = sink.commit()

    assert info['filename'] == 'song.wav'
    assert info['size'] == 8
    assert os.listdir(target) == ['song.wav']
    with open(os.path.join(target, 'song.wav'), 'rb') as f:
        assert f.read() == b'RIFFdata'


def test_upload_sink_long_name(tmp_path):
    target = str(tmp_path)
    name = 'a' * 246 + '.txt'
    sink = UploadSink(target, name).open()
    assert len(os.path.basename(sink.temp_path)) < 32
    sink.write(b'payload')
    sink.commit()
    assert os.listdir(target) == [name]


def test_upload_sink_temp_name_is_reserved(tmp_path):
    target = str(tmp_path)
    sink = UploadSink(target, 'song.wav').open()
    temp_name = os.path.basename(sink.temp_path)
    assert temp_name.startswith('.upload-')
    assert temp_name.endswith('.part')
    assert 'song' not in temp_name

    with pytest.raises(NotFound):
        open_download(sink.temp_path)
    sink.abort()


def test_upload_sink_overwrites(tmp_path):
    target = str(tmp_path)
    with open(os.path.join(target, 'a.txt'), 'wb') as f:
        f.write(b'old content')
    sink = UploadSink(target, 'a.txt').open()
    sink.write(b'new')
    sink.commit()
    with open(os.path.join(target, 'a.txt'), 'rb') as f:
        assert f.read() == b'new'


def test_upload_sink_rejects_empty(tmp_path):
    target = str(tmp_path)
    sink = UploadSink(target, 'empty.txt').open()
    with pytest.raises(InvalidInput):
        sink.commit()
    assert os.listdir(target) == []


def test_upload_sink_size_limit(tmp_path):
    target = str(tmp_path)
    with open(os.path.join(target, 'keep.txt'), 'wb') as f:
        f.write(b'previous')
    sink = UploadSink(target, 'keep.txt', max_size=4).open()
    sink.write(b'1234')
    with pytest.raises(PayloadTooLarge):
        sink.write(b'5')
    sink.abort()
    assert os.listdir(target) == ['keep.txt']
    with open(os.path.join(target, 'keep.txt'), 'rb') as f:
        assert f.read() == b'previous'


def test_upload_sink_target_is_file(tmp_path):
    path = tmp_path / 'file.txt'
    path.write_bytes(b'x')
    with pytest.raises(InvalidInput):
        UploadSink(str(path), 'a.txt').open()


async def agen(items):
    for item in items:
        yield item


@pytest.mark.asyncio
async def test_save_upload(tmp_path):
    target = str(tmp_path / 'new' / 'dir')
    info = await save_upload(target, '../../evil.txt', agen([b'abc', b'', b'def']))
    assert info['filename'] == 'evil.txt'
    assert os.listdir(target) == ['evil.txt']
    assert not os.path.exists(str(tmp_path / 'evil.txt'))


@pytest.mark.asyncio
async def test_save_upload_empty(tmp_path):
    with pytest.raises(InvalidInput):
        await save_upload(str(tmp_path), 'x.bin', agen([]))
    assert os.listdir(str(tmp_path)) == []


async def feed(processor, body, chunk_size):
    for i in range(0, len(body), chunk_size):
        await processor.process_chunk(body[i:i + chunk_size])
    return await processor.finalize()


# content that looks a lot like a boundary without being one
TRICKY = b'\r\n--' + BOUNDARY[:-1].encode('ascii') + b'X\r\n\r\n--\x00\xff' * 50


@pytest.mark.asyncio
@pytest.mark.parametrize('chunk_size', [1, 7, 64, 100000])
async def test_multipart_chunk_edges(tmp_path, chunk_size):
    content_type, body = build_multipart([
        ('note', None, b'ignored field'),
        ('file', 'song.wav', TRICKY),
    ])
    processor = MultipartStreamProcessor(BOUNDARY, str(tmp_path))
    try:
        info = await feed(processor, body, chunk_size)
    finally:
        await processor.cleanup()

    assert info['filename'] == 'song.wav'
    assert info['size'] == len(TRICKY)
    with open(os.path.join(str(tmp_path), 'song.wav'), 'rb') as f:
        assert f.read() == TRICKY


@pytest.mark.asyncio
async def test_multipart_only_first_file_is_stored(tmp_path):
    _, body = build_multipart([
        ('file', 'first.txt', b'one'),
        ('file', 'second.txt', b'two'),
        ('other', 'third.txt', b'three'),
    ])
    processor = MultipartStreamProcessor(BOUNDARY.encode('ascii'), str(tmp_path))
    info = await feed(processor, body, 13)
    assert info['filename'] == 'first.txt'
    assert os.listdir(str(tmp_path)) == ['first.txt']


@pytest.mark.asyncio
async def test_multipart_missing_file_field(tmp_path):
    _, body = build_multipart([('note', None, b'hello')])
    processor = MultipartStreamProcessor(BOUNDARY, str(tmp_path))
    with pytest.raises(InvalidInput):
        await feed(processor, body, 10)
    assert os.listdir(str(tmp_path)) == []


@pytest.mark.asyncio
async def test_multipart_empty_filename(tmp_path):
    _, body = build_multipart([('file', '', b'')])
    processor = MultipartStreamProcessor(BOUNDARY, str(tmp_path))
    with pytest.raises(InvalidInput):
        await feed(processor, body, 10)
    assert os.listdir(str(tmp_path)) == []


@pytest.mark.asyncio
async def test_multipart_truncated_body_leaves_nothing(tmp_path):
    _, body = build_multipart([('file', 'big.bin', b'x' * 5000)])
    processor = MultipartStreamProcessor(BOUNDARY, str(tmp_path))
    with pytest.raises(InvalidInput):
        await feed(processor, body[:3000], 512)
    await processor.cleanup()
    assert os.listdir(str(tmp_path)) == []


@pytest.mark.asyncio
async def test_multipart_file_size_limit(tmp_path):
    _, body = build_multipart([('file', 'big.bin', b'x' * 5000)])
    processor = MultipartStreamProcessor(BOUNDARY, str(tmp_path), max_file_size=1024)
    with pytest.raises(PayloadTooLarge):
        await feed(processor, body, 512)
    await processor.cleanup()
    assert os.listdir(str(tmp_path)) == []


@pytest.mark.asyncio
async def test_multipart_filename_star(tmp_path):
    body = (
        '--{b}\r\n'
        'Content-Disposition: form-data; name="file"; filename*=UTF-8\'\'%C3%BCber.txt\r\n'
        '\r\n'
        'content\r\n'
        '--{b}--\r\n'
    ).replace('{b}', BOUNDARY).encode('ascii')
    processor = MultipartStreamProcessor(BOUNDARY, str(tmp_path))
    info = await feed(processor, body, 16)
    assert info['filename'] == '\u00fcber.txt'


@pytest.mark.asyncio
async def test_download_chunks(tmp_path):
    path = str(tmp_path / 'data.bin')
    content = os.urandom(10000)
    with open(path, 'wb') as f:
        f.write(content)

    download = open_download(path, chunk_size=4096)
    assert download.size == 10000
    chunks = [chunk async for chunk in download.chunks()]
    assert [len(c) for c in chunks] == [4096, 4096, 1808]
    assert b''.join(chunks) == content


def test_download_missing(tmp_path):
    with pytest.raises(NotFound):
        open_download(str(tmp_path / 'missing.txt'))
    with pytest.raises(NotFound):
        open_download(str(tmp_path))


def test_content_disposition(tmp_path):
    (tmp_path / 'song.wav').write_bytes(b'x')
    (tmp_path / '\u00fcn\u00ef "q".txt').write_bytes(b'x')

    plain = open_download(str(tmp_path / 'song.wav')).content_disposition()
    assert plain == 'attachment; filename="song.wav"; filename*=UTF-8\'\'song.wav'

    fancy = open_download(str(tmp_path / '\u00fcn\u00ef "q".txt')).content_disposition()
    assert fancy.startswith('attachment; filename="?n? _q_.txt"; ')
    assert fancy.endswith("filename*=UTF-8''%C3%BCn%C3%AF%20%22q%22.txt")
    fancy.encode('ascii')
