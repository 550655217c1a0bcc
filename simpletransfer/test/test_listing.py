import os
import datetime

import pytest

from simpletransfer.common.exceptions import NotFound
from simpletransfer.listing import list_directory, format_size, build_breadcrumbs, parent_relpath, join_relpath, \
    DirectoryEntry, EntryKind
from simpletransfer.templates import render_listing


@pytest.fixture
def canonical_root(tmp_path):
    root = tmp_path / 'share'
    root.mkdir()
    return os.path.realpath(str(root))


def populate(root):
    for name in ['zeta', 'Alpha', 'mid']:
        os.mkdir(os.path.join(root, name))
    for name, size in [('b.txt', 10), ('a.bin', 2048), ('C.md', 0)]:
        with open(os.path.join(root, name), 'wb') as f:
            f.write(b'x' * size)


def test_directories_first_then_files_sorted(canonical_root):
    populate(canonical_root)
    entries = list_directory(canonical_root, canonical_root)

    assert len(entries) == len(os.listdir(canonical_root))
    kinds = [e.kind for e in entries]
    assert kinds == [EntryKind.DIRECTORY] * 3 + [EntryKind.FILE] * 3

    dir_names = [e.name for e in entries if e.is_dir]
    file_names = [e.name for e in entries if not e.is_dir]
    assert dir_names == sorted(dir_names, key=lambda n: (os.path.normcase(n), n))
    assert file_names == sorted(file_names, key=lambda n: (os.path.normcase(n), n))


def test_file_metadata(canonical_root):
    populate(canonical_root)
    entries = {e.name: e for e in list_directory(canonical_root, canonical_root)}
    assert entries['a.bin'].size == 2048
    assert entries['C.md'].size == 0
    assert isinstance(entries['b.txt'].last_modified, datetime.datetime)
    assert entries['mid'].size is None
    assert entries['mid'].last_modified is None


def test_uploads_in_progress_are_hidden(canonical_root):
    populate(canonical_root)
    with open(os.path.join(canonical_root, '.upload-x81kq2pz.part'), 'wb') as f:
        f.write(b'half written')
    names = [e.name for e in list_directory(canonical_root, canonical_root)]
    assert '.upload-x81kq2pz.part' not in names
    assert len(names) == 6


def test_empty_directory(canonical_root):
    assert list_directory(canonical_root, canonical_root) == []


def test_missing_directory(canonical_root):
    with pytest.raises(NotFound):
        list_directory(os.path.join(canonical_root, 'nope'), canonical_root)


def test_file_is_not_a_directory(canonical_root):
    path = os.path.join(canonical_root, 'file.txt')
    with open(path, 'wb') as f:
        f.write(b'data')
    with pytest.raises(NotFound):
        list_directory(path, canonical_root)


def test_symlinks(canonical_root, tmp_path):
    outside = tmp_path / 'outside'
    outside.mkdir()
    (outside / 'secret.txt').write_bytes(b'secret')
    inside = os.path.join(canonical_root, 'real')
    os.mkdir(inside)
    try:
        os.symlink(str(outside), os.path.join(canonical_root, 'escape'))
        os.symlink(inside, os.path.join(canonical_root, 'alias'))
        os.symlink(os.path.join(canonical_root, 'gone'), os.path.join(canonical_root, 'dangling'))
    except (OSError, NotImplementedError):
        pytest.skip('symlinks not available')

    names = [e.name for e in list_directory(canonical_root, canonical_root)]
    assert names == ['alias', 'real']


@pytest.mark.parametrize('size, expected', [
    (0, '0 B'),
    (512, '512 B'),
    (1023, '1023 B'),
    (1024, '1 KB'),
    (1536, '1.5 KB'),
    (1024 * 1024, '1 MB'),
    (int(2.25 * 1024 * 1024 * 1024), '2.25 GB'),
    (1024 ** 4, '1 TB'),
    (1024 ** 5, '1024 TB'),
])
def test_format_size(size, expected):
    assert format_size(size) == expected


def test_breadcrumbs():
    assert build_breadcrumbs('') == []
    assert build_breadcrumbs('a/b/c') == [('a', 'a'), ('b', 'a/b'), ('c', 'a/b/c')]


def test_relpath_helpers():
    assert parent_relpath('') == ''
    assert parent_relpath('a') == ''
    assert parent_relpath('a/b') == 'a'
    assert join_relpath('', 'x') == 'x'
    assert join_relpath('a/b', 'x') == 'a/b/x'


def test_render_escapes_names():
    entries = [
        DirectoryEntry('<b>dir</b>', EntryKind.DIRECTORY),
        DirectoryEntry('<script>alert(1)</script>.txt', EntryKind.FILE, 5, datetime.datetime(2024, 5, 6, 7, 8)),
    ]
    html = render_listing('docs', entries)
    assert '<script>alert(1)</script>' not in html
    assert '&lt;script&gt;alert(1)&lt;/script&gt;.txt' in html
    assert '<b>dir</b>' not in html
    assert '2024-05-06 07:08' in html
    assert '5 B' in html


def test_render_links_are_quoted():
    entries = [
        DirectoryEntry('my folder', EntryKind.DIRECTORY),
        DirectoryEntry('a b&c.txt', EntryKind.FILE, 1, datetime.datetime(2024, 1, 1)),
    ]
    html = render_listing('up & down', entries)
    assert 'href="/?path=up%20%26%20down/my%20folder"' in html
    assert 'href="/download?path=up%20%26%20down/a%20b%26c.txt"' in html
    assert 'action="/upload?path=up%20%26%20down"' in html
    assert 'href="/?path=up%20%26%20down"' in html


def test_render_breadcrumbs_and_up_link():
    html = render_listing('a/b', [])
    assert 'href="/?path=a"' in html
    assert 'href="/?path=a/b"' in html
    assert 'title="One level up"' in html
    assert 'data-kind=' not in html


def test_render_upload_form():
    html = render_listing('', [], field_name='file')
    assert 'enctype="multipart/form-data"' in html
    assert 'name="file"' in html
    assert 'action="/upload?path="' in html
