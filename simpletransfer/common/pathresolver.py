import os

from simpletransfer.common.exceptions import InvalidInput, NotFound, PathTraversalRejected
from simpletransfer.common.constants import UPLOAD_TEMP_PREFIX, UPLOAD_TEMP_SUFFIX


def normalize_relpath(rel:str) -> str:
	"""
	Turns a client supplied path into slash separated form relative to the root.
	The result is still untrusted, it only gets validated by resolve_dir/resolve_file
	"""
	rel = (rel or '').replace('\\', '/').strip()
	rel = rel.lstrip('/')
	while rel.find('//') != -1:
		rel = rel.replace('//', '/')
	return rel

def is_within(root:str, path:str) -> bool:
	"""Prefix check on canonical paths. Both arguments must already be realpath-ed"""
	root_c = os.path.normcase(root)
	path_c = os.path.normcase(path)
	if path_c == root_c:
		return True
	prefix = root_c if root_c.endswith(os.sep) else root_c + os.sep
	return path_c.startswith(prefix)

def resolve_dir(root:str, rel:str) -> str:
	"""
	Resolves rel against root and returns the canonical absolute path.
	The path does not need to exist. Empty rel resolves to root itself.
	Raises PathTraversalRejected if the canonical result is not below root
	"""
	rel = normalize_relpath(rel)
	if rel.find('\x00') != -1:
		raise InvalidInput('Path contains NUL byte')

	full = os.path.realpath(os.path.join(root, rel))
	if is_within(root, full) is False:
		raise PathTraversalRejected(rel)
	return full

def resolve_file(root:str, rel:str) -> str:
	"""
	Same as resolve_dir, but the root itself is never an addressable file.
	An empty path or one that resolves to the root is NotFound
	"""
	normalized = normalize_relpath(rel)
	if normalized == '':
		raise NotFound('File path must not be empty')

	full = resolve_dir(root, normalized)
	if os.path.normcase(full) == os.path.normcase(root):
		raise NotFound('Path "%s" does not point to a file' % normalized)
	return full

def relpath_from_root(root:str, path:str) -> str:
	"""Canonical slash separated path of a resolved path, '' for the root"""
	if os.path.normcase(path) == os.path.normcase(root):
		return ''
	return os.path.relpath(path, root).replace(os.sep, '/')

def is_upload_temp(name:str) -> bool:
	"""Names of uploads still being written, never listed nor served"""
	return name.startswith(UPLOAD_TEMP_PREFIX) and name.endswith(UPLOAD_TEMP_SUFFIX)
