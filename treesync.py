# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import os
import stat
import shutil
import logging
import time
import traceback
from pathlib import Path
from typing import NamedTuple, Iterator

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

COPY_BUFFER_SIZE = 8 * 1024

COPIED  = "copied"
SKIPPED = "skipped"
FAILED  = "failed"

# Platforms with a file-level read-only attribute that is separate from the owner-write bit.
_READONLY_ATTRIBUTE = os.name == "nt"

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = argparse.ArgumentParser(
		description="Copy new and updated files from a source directory to a target directory, and optionally delete files in the target that are absent from the source.",
		epilog="(c) 2025 Joe Walter"
	)

	parser.add_argument("-s", "--source-dir", metavar="path", required=True, type=str, help="The root directory to copy files from.")
	parser.add_argument("-t", "--target-dir", metavar="path", required=True, type=str, help="The root directory to copy files to. It will be created if it does not exist.")
	parser.add_argument("--delete", action="store_true", default=False, help="After copying, delete every file and directory in the target that has no counterpart in the source. The target root itself is never deleted.")
	parser.add_argument("-L", "--follow-symlinks", action="store_true", default=False, help="Follow symbolic links under the source directory. Linked directories are searched and linked files are copied by content. Without this flag, symbolic links in the source are skipped.")
	parser.add_argument("-d", "--dry-run", action="store_true", default=False, help="Forgo performing any operation that would make a file system change. Changes that would have occurred will still be printed to console.")

	parser.add_argument("--log", metavar="path", nargs="?", type=str, default=None, const="auto", help="The path of the log file to use. It must not already exist. With \"auto\" or no argument, the log will be written to the user's home directory. If this flag is absent, then no log file will be written.")
	parser.add_argument("--debug", action="store_true", default=False, help="Log debug messages, including skipped files.")
	parser.add_argument("-q", action="count", default=0, help="Forgo printing to stdout (-q) and stderr (-qq).")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		parsed_args.quiet     = parsed_args.q >= 1
		parsed_args.veryquiet = parsed_args.q >= 2
		del parsed_args.q
		return parsed_args

class FileEntry(NamedTuple):
	'''A file system entry found by `walk()`.'''

	path     : Path
	relpath  : Path
	is_dir   : bool
	is_file  : bool
	is_link  : bool
	mtime_ns : int
	size     : int
	depth    : int

class SyncEvent(NamedTuple):
	'''The outcome for one source file, as yielded by `sync()`.'''

	relpath : str
	outcome : str
	created : bool
	size    : int
	reason  : str | None = None

	@property
	def summary(self) -> str:
		'''
		One-line console form of this event.

		>>> SyncEvent("a.txt", COPIED, True, 3).summary
		'+ a.txt'
		>>> SyncEvent("a.txt", COPIED, False, 3).summary
		'U a.txt'
		>>> SyncEvent("a.txt", SKIPPED, False, 0).summary
		'= a.txt'
		'''

		if self.outcome == COPIED:
			return ("+ " if self.created else "U ") + self.relpath
		if self.outcome == FAILED:
			return f"! {self.relpath}: {self.reason}"
		return "= " + self.relpath

class PruneReport(NamedTuple):
	'''Relative paths deleted by `prune()`, in deletion order, and the deletions that failed.'''

	deleted  : list[str]
	failures : list[tuple[str, str]]

class Results:
	'''Various statistics and other information returned by `backup()`.'''

	def __init__(self) -> None:
		self.log_file   : Path | None = None

		self.success    : bool        = False
		self.errors     : list[str]   = []

		self.create_success = 0
		self.update_success = 0
		self.skip_count     = 0
		self.copy_error     = 0
		self.delete_success = 0
		self.delete_error   = 0
		self.bytes_copied   = 0

	@property
	def err_count(self) -> int:
		return self.copy_error + self.delete_error

	@property
	def processed(self) -> int:
		return self.create_success + self.update_success + self.skip_count + self.copy_error

	def record(self, event:SyncEvent) -> None:
		'''Count one event from `sync()`.'''

		if event.outcome == COPIED:
			if event.created:
				self.create_success += 1
			else:
				self.update_success += 1
			self.bytes_copied += event.size
		elif event.outcome == SKIPPED:
			self.skip_count += 1
		else:
			self.copy_error += 1
			self.errors.append(event.reason or event.relpath)

	def record_prune(self, report:PruneReport) -> None:
		self.delete_success += len(report.deleted)
		self.delete_error   += len(report.failures)
		self.errors.extend(msg for _, msg in report.failures)

def backup_cmd(args:list[str]) -> Results:
	'''Run `backup()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	return backup(
		parsed_args.source_dir,
		parsed_args.target_dir,
		delete          = parsed_args.delete,
		follow_symlinks = parsed_args.follow_symlinks,
		dry_run         = parsed_args.dry_run,
		log             = parsed_args.log,
		debug           = parsed_args.debug,
		quiet           = parsed_args.quiet,
		veryquiet       = parsed_args.veryquiet
	)

def backup(
		src             : str | os.PathLike[str],
		dst             : str | os.PathLike[str],
		*,
		delete          : bool = False,
		follow_symlinks : bool = False,
		dry_run         : bool = False,
		log             : str | os.PathLike[str] | None = None,
		debug           : bool = False,
		quiet           : bool = False,
		veryquiet       : bool = False,
	) -> Results:
	'''
	Copies new and updated files from `src` to `dst`, and optionally deletes entries from `dst` that are not present in `src`. A file is copied when it is missing from `dst` or when its modification time in `src` is strictly later than in `dst`. Deletion only starts once every copy has finished, and works deepest-first so that directories emptied of orphans are removed as well.

	Args
		src (str or PathLike)    : The path of the root directory to copy files from. Must be an existing directory.
		dst (str or PathLike)    : The path of the root directory to copy files to. It will be created if it does not exist.
		delete (bool)            : Whether to delete files and directories in `dst` that have no counterpart in `src`. (Defaults to `False`.)
		follow_symlinks (bool)   : Whether to follow symbolic links under `src`. If `False`, symbolic links in `src` are neither searched nor copied. Links in `dst` are never followed. (Defaults to `False`.)
		dry_run (bool)           : Whether to hold off performing any operation that would make a file system change. Changes that would have occurred will still be printed to console. (Defaults to `False`.)

		log (str or PathLike)    : The path of the log file to use. It must not already exist. A value of "auto" means a log file will be created in the user's home directory. A value of `None` will skip logging to a file. (Defaults to `None`.)
		debug (bool)             : Whether to log debug messages. (Default to `False`.)
		quiet (bool)             : Whether to forgo printing to stdout.
		veryquiet (bool)         : Whether to forgo printing to stdout and stderr.

	Example Console Output
		   path/to/src
		-> path/to/dst
		--------------
		+ not-in-dst.txt
		U updated.txt
		- not-in-src.txt
		- empty-dir-in-dst/
		Deleted 2 orphan item(s).

		*** treesync finished successfully. ***

		Summary
		-------
		Create Success: 1
		Update Success: 1
		Skipped: 14
		Delete Success: 2
		Copied: 12 KB

	Returns
		A `Results` object containing various statistics.
	'''
	results = Results()

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	handler_stdout = None
	handler_stderr = None
	handler_file   = None

	if veryquiet:
		quiet = True

	if not quiet:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if not veryquiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)

	try:
		if not isinstance(src, (str, os.PathLike)):
			msg = f"Bad type for arg 'src' (expected str or PathLike): {src}"
			raise TypeError(msg)
		if not isinstance(dst, (str, os.PathLike)):
			msg = f"Bad type for arg 'dst' (expected str or PathLike): {dst}"
			raise TypeError(msg)
		if not isinstance(delete, bool):
			msg = f"Bad type for arg 'delete' (expected bool): {delete}"
			raise TypeError(msg)
		if not isinstance(follow_symlinks, bool):
			msg = f"Bad type for arg 'follow_symlinks' (expected bool): {follow_symlinks}"
			raise TypeError(msg)
		if not isinstance(dry_run, bool):
			msg = f"Bad type for arg 'dry_run' (expected bool): {dry_run}"
			raise TypeError(msg)
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)
		if not isinstance(quiet, bool):
			msg = f"Bad type for arg 'quiet' (expected bool): {quiet}"
			raise TypeError(msg)
		if not isinstance(veryquiet, bool):
			msg = f"Bad type for arg 'veryquiet' (expected bool): {veryquiet}"
			raise TypeError(msg)

		src_root = Path(src)
		dst_root = Path(dst)

		if log is None:
			log_file = None
		elif log == "auto":
			timestamp = str(int(time.time()*1000))
			log_file = Path.home() / f"treesync.{timestamp}.log"
		else:
			log_file = Path(log)
		results.log_file = log_file

		_check_roots(src_root, dst_root)
		if log_file is not None and os.path.exists(log_file):
			msg = f"Chosen log already exists: {log_file}"
			raise ValueError(msg)

		if log_file is not None:
			handler_file = logging.FileHandler(log_file, encoding="utf-8")
			handler_file.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
			if debug:
				handler_file.setLevel(logging.DEBUG)
			else:
				handler_file.setLevel(logging.INFO)
			logger.addHandler(handler_file)

		logger.debug(f"Starting backup: {src_root=} {dst_root=} {delete=} {follow_symlinks=} {dry_run=} {log_file=} {debug=} {quiet=} {veryquiet=}")

		if not dry_run:
			try:
				os.makedirs(dst_root, exist_ok=True)
			except OSError as e:
				msg = f"Cannot create 'dst': {_error_summary(e)}"
				raise ValueError(msg) from e

		width = max(len(str(src_root)), len(str(dst_root))) + 3
		logger.info("   " + str(src_root))
		logger.info("-> " + str(dst_root))
		logger.info("-" * width)

		for event in sync(src_root, dst_root, follow_symlinks=follow_symlinks, dry_run=dry_run):
			results.record(event)
			if event.outcome == COPIED:
				logger.info(event.summary)
			elif event.outcome == SKIPPED:
				logger.debug(event.summary)

		# a dry run does not create `dst`, so there may be nothing to prune
		if delete and dst_root.is_dir():
			logger.info("")
			logger.info("Cleaning up orphans ...")
			results.record_prune(prune(src_root, dst_root, dry_run=dry_run))

		logger.info("")
		logger.info("*** treesync finished successfully. ***")

		results.success = True

	except KeyboardInterrupt:
		logger.critical(f"Cancelled by user.")
	except (TypeError, ValueError) as e:
		logger.critical(f"Input Error: {e}")
	except Exception as e:
		logger.critical("Unexpected error: " + _error_summary(e))
		logger.critical(traceback.format_exc())

	finally:
		if dry_run:
			logger.info("")
			logger.info("*** DRY RUN ***")
		logger.info("")
		logger.info("Summary")
		logger.info("-------")
		logger.info(f"Create Success: {results.create_success}")
		logger.info(f"Update Success: {results.update_success}")
		logger.info(f"Skipped: {results.skip_count}" + (f" / Failed: {results.copy_error}" if results.copy_error else ""))
		if delete:
			logger.info(f"Delete Success: {results.delete_success}" + (f" / Failed: {results.delete_error}" if results.delete_error else ""))
		logger.info(f"Copied: {_human_readable_size(results.bytes_copied)}")

		if results.err_count:
			logger.info("")
			logger.info(f"There were {results.err_count} errors.")
			if results.err_count <= 10:
				logger.info("Errors are reprinted below for convenience.")
				for error in results.errors:
					logger.info(error)

		if handler_file:
			logger.info("")
			logger.info(f"Log file: {results.log_file}")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()

	return results

def _check_roots(src_root:Path, dst_root:Path) -> None:
	'''Raise a `ValueError` if `src_root` and `dst_root` cannot be synced. Nothing is modified.'''

	if not src_root.is_dir():
		msg = f"Chosen 'src' does not exist or is not a directory: {src_root}"
		raise ValueError(msg)
	if dst_root.exists() and not dst_root.is_dir():
		msg = f"Chosen 'dst' is not a directory: {dst_root}"
		raise ValueError(msg)
	src_real = src_root.resolve()
	dst_real = dst_root.resolve()
	if src_real == dst_real:
		msg = f"Chosen 'src' and 'dst' point to the same directory"
		raise ValueError(msg)
	if src_real in dst_real.parents:
		msg = f"Chosen 'dst' is inside 'src': {dst_root}"
		raise ValueError(msg)
	if dst_real in src_real.parents:
		msg = f"Chosen 'src' is inside 'dst': {src_root}"
		raise ValueError(msg)

def walk(root:str | os.PathLike[str], *, follow_symlinks:bool = False) -> Iterator[FileEntry]:
	'''
	Lazily yields an entry for every file system node under `root`, parents before children and siblings in name order. `root` itself is not yielded, but it is followed if it is a symbolic link.

	A directory that cannot be listed, or an entry whose metadata cannot be read, is logged and skipped; the walk carries on with the next node.

	Args
		root (str or PathLike) : The directory to search.
		follow_symlinks (bool) : Whether to follow symbolic links under `root`. If `False`, a link is yielded as itself (with `is_link` set and its own metadata) and never searched. If `True`, links are resolved, and a linked directory that is already an ancestor of itself is logged and not searched again. (Defaults to `False`.)
	'''

	root = Path(root)
	ancestors = set()
	if follow_symlinks:
		try:
			st = os.stat(root)
			ancestors.add((st.st_dev, st.st_ino))
		except OSError as e:
			logger.error(f"Cannot read directory: {_error_summary(e)}")
			return
	yield from _walk_dir(root, (), ancestors, follow_symlinks)

def _walk_dir(dir:Path, parts:tuple[str, ...], ancestors:set[tuple[int, int]], follow_symlinks:bool) -> Iterator[FileEntry]:
	try:
		with os.scandir(dir) as it:
			dir_entries = sorted(it, key=lambda e: e.name)
	except OSError as e:
		logger.error(f"Cannot read directory: {_error_summary(e)}")
		return

	for dir_entry in dir_entries:
		relparts = parts + (dir_entry.name,)
		try:
			is_link = dir_entry.is_symlink()
			st = dir_entry.stat(follow_symlinks=follow_symlinks)
		except OSError as e:
			logger.error(f"Cannot read entry: {_error_summary(e)}")
			continue

		entry = FileEntry(
			path     = Path(dir_entry.path),
			relpath  = Path(*relparts),
			is_dir   = stat.S_ISDIR(st.st_mode),
			is_file  = stat.S_ISREG(st.st_mode),
			is_link  = is_link,
			mtime_ns = st.st_mtime_ns,
			size     = st.st_size,
			depth    = len(relparts),
		)
		yield entry

		if entry.is_dir:
			key = (st.st_dev, st.st_ino)
			if follow_symlinks and key in ancestors:
				logger.error(f"Symlink circular reference, not searching: {entry.path}")
				continue
			yield from _walk_dir(entry.path, relparts, ancestors | {key}, follow_symlinks)

def sync(
		src             : str | os.PathLike[str],
		dst             : str | os.PathLike[str],
		*,
		follow_symlinks : bool = False,
		dry_run         : bool = False,
	) -> Iterator[SyncEvent]:
	'''
	Generator that brings every regular file under `src` up to date at the same relative path under `dst`, yielding one `SyncEvent` per file.

	The source tree is listed when iteration starts. A file is copied when its target is missing or when the source modification time is strictly later than the target's; otherwise it is skipped. Copies stream through a fixed-size buffer and overwrite the target in place. Any error is logged and reported as a `FAILED` event for that file alone.

	`src` must be an existing directory and `dst` an existing or creatable one; see `backup()` for the checks. `src` is never modified.
	'''

	src_root = Path(src)
	dst_root = Path(dst)

	files = []
	for entry in walk(src_root, follow_symlinks=follow_symlinks):
		if entry.is_file:
			files.append(entry)
		elif entry.is_link:
			logger.debug(f"Not following symlink: {entry.relpath}")
		elif not entry.is_dir:
			logger.debug(f"Not a regular file: {entry.relpath}")

	for entry in files:
		yield _sync_file(entry, src_root, dst_root, dry_run=dry_run)

def _sync_file(entry:FileEntry, src_root:Path, dst_root:Path, *, dry_run:bool) -> SyncEvent:
	'''Decide on and carry out the copy of one source file.'''

	try:
		relpath = entry.path.relative_to(src_root)
	except ValueError:
		msg = f"Path is outside of the source root, not copying: {entry.path}"
		logger.error(msg)
		return SyncEvent(str(entry.path), FAILED, False, 0, msg)

	name = str(relpath)
	dst_path = dst_root / relpath

	link = _linked_parent(dst_root, relpath)
	if link is not None:
		msg = f"Target directory is a symlink, not copying: {link}"
		logger.error(msg)
		return SyncEvent(name, FAILED, False, 0, msg)

	try:
		op = _compare(entry.path, dst_path)
	except OSError as e:
		msg = f"Cannot read modification time: {_error_summary(e)}"
		logger.error(msg)
		return SyncEvent(name, FAILED, False, 0, msg)

	if op is None:
		return SyncEvent(name, SKIPPED, False, 0)
	created = op == "+"
	if dry_run:
		return SyncEvent(name, COPIED, created, entry.size)

	try:
		dst_path.parent.mkdir(parents=True, exist_ok=True)
	except OSError as e:
		msg = f"Cannot create directory: {_error_summary(e)}"
		logger.error(msg)
		return SyncEvent(name, FAILED, created, 0, msg)

	if not created:
		try:
			if dst_path.is_symlink():
				# replace the link itself rather than write through it
				dst_path.unlink()
			else:
				clear_write_protection(dst_path)
		except OSError as e:
			msg = f"Cannot make target writable: {_error_summary(e)}"
			logger.error(msg)
			return SyncEvent(name, FAILED, created, 0, msg)

	try:
		size = _copy(entry.path, dst_path)
	except OSError as e:
		msg = f"Cannot copy file: {_error_summary(e)}"
		logger.error(msg)
		return SyncEvent(name, FAILED, created, 0, msg)

	return SyncEvent(name, COPIED, created, size)

def _linked_parent(dst_root:Path, relpath:Path) -> Path | None:
	'''Returns the first directory between `dst_root` and `dst_root / relpath` that is a symbolic link, if any.'''

	for parent in reversed(relpath.parents[:-1]):
		path = dst_root / parent
		if os.path.islink(path):
			return path
	return None

def _compare(src_path:Path, dst_path:Path) -> str | None:
	'''Returns "+" if `dst_path` is missing, "U" if it is stale, or `None` if it is up to date. Raises `OSError` if metadata cannot be read.'''

	try:
		dst_stat = os.stat(dst_path, follow_symlinks=False)
	except (FileNotFoundError, NotADirectoryError):
		return "+"
	if stat.S_ISLNK(dst_stat.st_mode):
		return "U"
	src_stat = os.stat(src_path)
	if src_stat.st_mtime_ns > dst_stat.st_mtime_ns:
		return "U"
	return None

def _copy(src:Path, dst:Path, *, buffer_size:int = COPY_BUFFER_SIZE) -> int:
	'''Stream `src` into `dst` (created or truncated) through a buffer of `buffer_size` bytes. Returns the number of bytes written.'''

	with open(src, "rb") as fsrc, open(dst, "wb") as fdst:
		shutil.copyfileobj(fsrc, fdst, buffer_size)
		return fdst.tell()

def clear_write_protection(path:str | os.PathLike[str]) -> None:
	'''
	Clear the read-only attribute of `path` so that it can be overwritten or deleted.

	This only does something on platforms where such an attribute exists apart from the permission bits (Windows); elsewhere it is a no-op.
	'''

	if not _READONLY_ATTRIBUTE:
		return
	mode = os.lstat(path).st_mode
	if not mode & stat.S_IWRITE:
		os.chmod(path, stat.S_IMODE(mode) | stat.S_IWRITE)

def prune(
		src     : str | os.PathLike[str],
		dst     : str | os.PathLike[str],
		*,
		dry_run : bool = False,
	) -> PruneReport:
	'''
	Delete every entry under `dst` whose relative path does not exist under `src`, deepest entries first, so that a directory is only removed after the orphans inside it. `dst` itself is never deleted, and symbolic links under `dst` are removed as links, never followed.

	A failed deletion (for instance a directory that still holds a kept or undeletable entry) is logged as a warning and reported; the pass always tries every candidate.
	'''

	src_root = Path(src)
	dst_root = Path(dst)
	report = PruneReport(deleted=[], failures=[])

	entries = sorted(walk(dst_root), key=lambda entry: entry.depth, reverse=True)

	for entry in entries:
		relpath = entry.path.relative_to(dst_root)
		if os.path.lexists(src_root / relpath):
			continue

		name = str(relpath) + (os.sep if entry.is_dir else "")
		if not dry_run:
			try:
				clear_write_protection(entry.path)
			except OSError as e:
				logger.debug(f"Cannot clear write protection: {_error_summary(e)}")
			try:
				if entry.is_dir:
					os.rmdir(entry.path)
				else:
					os.remove(entry.path)
			except OSError as e:
				msg = f"Failed to delete {name}: {_error_summary(e)}"
				logger.warning(msg)
				report.failures.append((str(relpath), msg))
				continue

		logger.info(f"- {name}")
		report.deleted.append(str(relpath))

	if report.deleted:
		logger.info(f"Deleted {len(report.deleted)} orphan item(s).")
	else:
		logger.info("No orphans to delete.")

	return report

def _human_readable_size(n:float) -> str:
	'''
	Translates `n` bytes into a human-readable size.

	>>> _human_readable_size(1023)
	'1023 bytes'
	>>> _human_readable_size(1024)
	'1 KB'
	>>> _human_readable_size(2.1 * 1024 * 1024)
	'2 MB'
	'''

	units = ["bytes", "KB", "MB", "GB", "TB", "PB"]
	i = 0
	while n >= 1024 and i < len(units) - 1:
		n //= 1024
		i += 1
	return f"{round(n)} {units[i]}"

def _error_summary(e:BaseException) -> str:
	'''
	Get a one-line summary of an Error.

	>>> _error_summary(FileNotFoundError(2, "No such file or directory", "a.txt"))
	'FileNotFoundError: a.txt (No such file or directory)'
	>>> _error_summary(ValueError("bad"))
	'ValueError: bad'
	'''

	error_type = type(e).__name__
	if isinstance(e, OSError):
		affected_file = getattr(e, "filename", None) or "N/A"
		reason = e.strerror or str(e)
		return f"{error_type}: {affected_file} ({reason})"
	return f"{error_type}: {e}"

def main() -> None:
	try:
		results = backup_cmd(sys.argv[1:])
	except Exception:
		print()
		traceback.print_exc()
		sys.exit(2)
	if not results.success:
		sys.exit(2)
	if results.err_count:
		sys.exit(1)

if __name__ == "__main__":
	main()
