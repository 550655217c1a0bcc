"""
Directory listing

Builds the ordered entry sequence for one directory below the served root,
plus the small path helpers the listing page needs (breadcrumbs, parent
link, human readable sizes). Nothing here is cached, every call reads the
filesystem again.
"""

import os
import enum
import datetime
from typing import List, Tuple

from simpletransfer import logger
from simpletransfer.common.exceptions import NotFound
from simpletransfer.common.pathresolver import is_within, is_upload_temp


class EntryKind(enum.Enum):
    DIRECTORY = 'directory'
    FILE = 'file'


class DirectoryEntry:
    def __init__(self, name:str, kind:EntryKind, size:int = None, last_modified:datetime.datetime = None):
        self.name = name
        self.kind = kind
        self.size = size
        self.last_modified = last_modified

    @property
    def is_dir(self):
        return self.kind == EntryKind.DIRECTORY

    def __repr__(self):
        return str(self.__dict__)

    def __str__(self):
        return repr(self)


def _sort_key(entry:DirectoryEntry):
    return (os.path.normcase(entry.name), entry.name)

def _escapes_root(root:str, entry:os.DirEntry) -> bool:
    if not entry.is_symlink():
        return False
    target = os.path.realpath(entry.path)
    if is_within(root, target):
        return False
    logger.debug('[LISTING] Hiding symlink %s -> %s (outside of root)' % (entry.path, target))
    return True

def list_directory(directory:str, root:str) -> List[DirectoryEntry]:
    """
    Lists the immediate children of directory.

    Directories come first, then regular files, both sorted by name the way
    the OS compares names. Symlinks are followed only when their target stays
    inside root; devices, sockets, FIFOs, dangling links and uploads still
    in progress are left out.

    Args:
        directory (str): Canonical absolute path of the directory to list
        root (str): Canonical served root

    Returns:
        list: DirectoryEntry objects

    Raises:
        NotFound: directory does not exist or is not a directory
    """
    if not os.path.isdir(directory):
        raise NotFound('Directory not found')

    directories = []
    files = []
    try:
        with os.scandir(directory) as it:
            for entry in it:
                if is_upload_temp(entry.name):
                    continue
                try:
                    if _escapes_root(root, entry):
                        continue
                    if entry.is_dir():
                        directories.append(DirectoryEntry(entry.name, EntryKind.DIRECTORY))
                    elif entry.is_file():
                        st = entry.stat()
                        files.append(DirectoryEntry(
                            entry.name,
                            EntryKind.FILE,
                            size = st.st_size,
                            last_modified = datetime.datetime.fromtimestamp(st.st_mtime),
                        ))
                except OSError as e:
                    # removed or unreadable between scandir and stat
                    logger.debug('[LISTING] Skipping %s: %s' % (entry.path, e))
    except FileNotFoundError:
        raise NotFound('Directory not found')
    except NotADirectoryError:
        raise NotFound('Directory not found')

    directories.sort(key=_sort_key)
    files.sort(key=_sort_key)
    return directories + files


def format_size(size:int) -> str:
    """Human readable size with binary steps: 512 B, 1.5 KB, 3.27 MB ..."""
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    if i == 0:
        return '%d %s' % (size, units[i])
    text = ('%.2f' % value).rstrip('0').rstrip('.')
    return '%s %s' % (text, units[i])

def join_relpath(rel:str, name:str) -> str:
    if not rel:
        return name
    return '%s/%s' % (rel, name)

def parent_relpath(rel:str) -> str:
    parts = [p for p in rel.split('/') if p]
    return '/'.join(parts[:-1])

def build_breadcrumbs(rel:str) -> List[Tuple[str, str]]:
    """Returns (label, path) pairs, one per segment, each path being the accumulated prefix"""
    crumbs = []
    current = ''
    for segment in rel.split('/'):
        if not segment:
            continue
        current = join_relpath(current, segment)
        crumbs.append((segment, current))
    return crumbs
