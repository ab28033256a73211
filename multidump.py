import re
import os
import sys
import time
import shlex
import shutil
import argparse
import threading
import subprocess
import concurrent.futures
from tqdm import tqdm

# Line-prefix markers emitted by mysqldump around every table's DDL/DML block.
TABLE_START_MARKER = "DROP TABLE"
TABLE_END_MARKER = "UNLOCK TABLES;"
# Table name is quoted with backticks on the DROP TABLE line.
IDENTIFIER_QUOTE = "`"

DEFAULT_CLIENT = "mysql"
UNNAMED_TABLE = "unnamed"

# Dumps may carry non-UTF-8 bytes and bare \r inside binary columns; keep them as-is.
DUMP_ENCODING = "utf-8"
DUMP_ERRORS = "surrogateescape"


def _open_dump(path, mode='r'):
    return open(path, mode, encoding=DUMP_ENCODING, errors=DUMP_ERRORS, newline="\n")


def _check_input_file(file_path):
    file_path = os.path.abspath(os.path.expanduser(file_path))
    if not os.path.isfile(file_path):
        raise FileNotFoundError(f"Dump file not found: {file_path}")
    return file_path


def scan_sql_dump(file_path, show_progress=False):
    """Determines the preamble and postamble shared by every table in a dump.

    The preamble is every line before the first DROP TABLE line. The postamble
    is every line after the last UNLOCK TABLES; line; it is empty when the dump
    has no such line.

    Returns a (preamble, postamble) tuple of newline-joined strings.
    """
    file_path = _check_input_file(file_path)
    print("Scanning SQL dump to determine preamble and postamble...", file=sys.stderr)

    preamble = []
    postamble = []
    in_preamble = True
    seen_end_marker = False

    with _open_dump(file_path) as f:
        line_iter = tqdm(f, desc="Scanning", unit="lines", file=sys.stderr, disable=not show_progress)
        for line in line_iter:
            line = line.rstrip('\r\n')
            if in_preamble:
                if line.startswith(TABLE_START_MARKER):
                    in_preamble = False
                else:
                    preamble.append(line)
                    continue

            if line.startswith(TABLE_END_MARKER):
                # Everything up to and including the marker belongs to a table
                seen_end_marker = True
                postamble = []
                continue
            postamble.append(line)

    if not seen_end_marker:
        postamble = []

    print("Preamble and postamble determined.", file=sys.stderr)
    return "\n".join(preamble), "\n".join(postamble)


def extract_table_name(line):
    """Returns the text between the first two backticks of a line, or ''."""
    parts = line.split(IDENTIFIER_QUOTE)
    if len(parts) < 3:
        return ""
    return parts[1]


def _sanitize_filename(name):
    """Sanitize table name for use in filename."""
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', name).lstrip('.')


class _TableFileNamer:
    """Hands out unique <table>.sql names for the tables of one split run."""

    def __init__(self):
        self._used = set()

    def next_name(self, table_name):
        base = _sanitize_filename(table_name) or UNNAMED_TABLE
        name = base
        suffix = 1
        while name.lower() in self._used:
            suffix += 1
            name = f"{base}_{suffix}"
        if name != base:
            print(f"Warning: table name '{table_name}' already written, using {name}.sql", file=sys.stderr)
        self._used.add(name.lower())
        return f"{name}.sql"


def _finish_table_file(table_file, postamble):
    table_file.write(postamble)
    table_file.close()


def split_sql_dump(file_path, output_dir, preamble, postamble, show_progress=False):
    """Writes one <table>.sql file per table segment of the dump.

    Each file holds the preamble, a blank line, the segment from its DROP TABLE
    line through its UNLOCK TABLES; line, and the postamble. A segment still
    open at end of file, or interrupted by the next DROP TABLE, is closed with
    the lines seen so far.

    Returns the list of written paths, in dump order.
    """
    file_path = _check_input_file(file_path)
    os.makedirs(output_dir, exist_ok=True)

    print("Splitting SQL dump file...", file=sys.stderr)
    header = (preamble + "\n" if preamble else "") + "\n"
    namer = _TableFileNamer()
    written = []
    table_file = None

    try:
        with _open_dump(file_path) as f:
            line_iter = tqdm(f, desc="Splitting", unit="lines", file=sys.stderr, disable=not show_progress)
            for line in line_iter:
                line = line.rstrip('\r\n')
                if line.startswith(TABLE_START_MARKER):
                    if table_file is not None:
                        _finish_table_file(table_file, postamble)
                        table_file = None

                    table_name = extract_table_name(line)
                    out_path = os.path.join(output_dir, namer.next_name(table_name))
                    if show_progress:
                        line_iter.set_postfix_str(table_name)
                    else:
                        print(f"Creating file for table: {table_name}", file=sys.stderr)
                    table_file = _open_dump(out_path, 'w')
                    written.append(out_path)
                    table_file.write(header)
                    table_file.write(line + "\n")
                    continue

                if table_file is None:
                    # Between segments: comments, blank lines, the postamble itself
                    continue
                table_file.write(line + "\n")

                if line.startswith(TABLE_END_MARKER):
                    _finish_table_file(table_file, postamble)
                    table_file = None

            if table_file is not None:
                _finish_table_file(table_file, postamble)
                table_file = None
    finally:
        if table_file is not None:
            table_file.close()

    print(f"Splitting completed: {len(written)} table files written to {output_dir}", file=sys.stderr)
    return written


class ImportProgress:
    """Thread-safe progress reporter shared by concurrent import jobs.

    Wraps a tqdm bar; the counter, the last status message and the bar are
    only touched while holding the lock.
    """

    def __init__(self, total, disable=False):
        self._lock = threading.Lock()
        self.count = 0
        self.message = ""
        self._bar = tqdm(total=total, desc="Importing", unit="file", file=sys.stderr, disable=disable)

    def advance(self, message):
        with self._lock:
            self.count += 1
            self.message = message
            self._bar.update(1)
            self._bar.set_postfix_str(message)

    def finish(self, message):
        with self._lock:
            self.message = message
            self._bar.set_postfix_str(message)
            self._bar.close()


def _env_int(name):
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def resolve_parallel(parallel, file_count):
    """Works out the batch size for an import.

    None falls back to MULTIDUMP_PARALLEL, then to the CPU count. -1 means all
    files in a single batch. The result is clamped to MULTIDUMP_MAX_PARALLEL
    (default 4x CPU cores).
    """
    cpu_count = os.cpu_count() or 1
    if parallel is None:
        parallel = _env_int("MULTIDUMP_PARALLEL")
        if parallel is None or parallel == 0 or parallel < -1:
            parallel = cpu_count

    if parallel == -1:
        parallel = max(file_count, 1)
    elif parallel < 1:
        raise ValueError(f"parallel must be >= 1 or -1, got {parallel}")

    hard_cap = _env_int("MULTIDUMP_MAX_PARALLEL")
    if hard_cap is None or hard_cap < 1:
        hard_cap = cpu_count * 4
    if parallel > hard_cap:
        print(
            f"parallel={parallel} exceeds hard cap {hard_cap}; clamping to {hard_cap}. "
            "Override cap with MULTIDUMP_MAX_PARALLEL.",
            file=sys.stderr,
        )
        parallel = hard_cap
    return parallel


def build_client_args(database, host=None, port=None, user=None, password=None, client=None):
    """Builds the argv for one client invocation; input is fed on stdin."""
    if not client:
        client = os.getenv("MULTIDUMP_CLIENT") or DEFAULT_CLIENT
    args = shlex.split(client) or [DEFAULT_CLIENT]
    if host is not None:
        args.append(f"--host={host}")
    if port is not None:
        args.append(f"--port={port}")
    if user is not None:
        args.append(f"--user={user}")
    if password is not None:
        args.append(f"--password={password}")
    args.append(database)
    return args


def format_command(args, path):
    """Shell-style rendering of an invocation for debug output, password masked."""
    shown = " ".join("--password=****" if a.startswith("--password=") else shlex.quote(a) for a in args)
    return f"{shown} < {shlex.quote(str(path))}"


def _import_file(path, args, progress):
    """Worker: runs the client once with the table file on stdin."""
    t_start = time.monotonic()
    result = {'path': path, 'ok': False, 'returncode': None, 'error': None}
    try:
        with open(path, 'rb') as stdin:
            proc = subprocess.run(args, stdin=stdin, capture_output=True)
        result['returncode'] = proc.returncode
        if proc.returncode == 0:
            result['ok'] = True
        else:
            stderr_text = proc.stderr.decode('utf-8', errors='replace').strip()
            result['error'] = stderr_text or f"exit code {proc.returncode}"
    except OSError as e:
        result['error'] = f"failed to execute import command: {e}"
    result['elapsed_ms'] = int((time.monotonic() - t_start) * 1000)

    if not result['ok']:
        print(f"Error importing {path}: {result['error']}", file=sys.stderr)
    progress.advance(f"Importing file: {path}")
    return result


def list_table_files(input_dir):
    """Regular files directly inside input_dir, sorted by name."""
    with os.scandir(input_dir) as entries:
        paths = [entry.path for entry in entries if entry.is_file()]
    return sorted(paths)


def import_sql_files(input_dir, database, host=None, port=None, user=None, password=None,
                     parallel=None, delete=False, debug=False, client=None, timing=False):
    """Imports every table file in input_dir through the database client.

    Files are imported in batches of `parallel` concurrent client processes;
    the next batch starts only once the whole current batch has finished.
    A failing file is reported and counted, never fatal. With `delete`, the
    input directory is removed afterwards even if imports failed.

    Returns a summary dict with total, succeeded, failed and per-file results.
    """
    paths = list_table_files(input_dir)
    parallel = resolve_parallel(parallel, len(paths))
    args = build_client_args(database, host=host, port=port, user=user, password=password, client=client)

    print(f"Importing {len(paths)} SQL files ({parallel} at a time)...", file=sys.stderr)
    progress = ImportProgress(len(paths), disable=debug)
    results = []
    t_import_start = time.monotonic()

    with concurrent.futures.ThreadPoolExecutor(max_workers=parallel) as executor:
        for batch_start in range(0, len(paths), parallel):
            batch = paths[batch_start:batch_start + parallel]
            future_to_path = {}
            for path in batch:
                if debug:
                    print(f"[DEBUG] Running command: {format_command(args, path)}", file=sys.stderr)
                future_to_path[executor.submit(_import_file, path, args, progress)] = path

            concurrent.futures.wait(future_to_path)
            for future, path in future_to_path.items():
                try:
                    results.append(future.result())
                except Exception as e:
                    print(f"Error importing {path}: {e}", file=sys.stderr)
                    progress.advance(f"Importing file: {path}")
                    results.append({'path': path, 'ok': False, 'returncode': None,
                                    'error': str(e), 'elapsed_ms': 0})

    progress.finish("Import completed.")
    import_ms = int((time.monotonic() - t_import_start) * 1000)
    if debug or timing:
        print(f"[DEBUG] Timing: import took {import_ms}ms", file=sys.stderr)

    summary = {
        'total': len(results),
        'succeeded': sum(1 for r in results if r['ok']),
        'failed': [r['path'] for r in results if not r['ok']],
        'results': results,
    }
    _print_summary(summary, show_timing=debug or timing)

    if delete:
        print(f"Deleting directory: {input_dir}", file=sys.stderr)
        try:
            shutil.rmtree(input_dir)
        except OSError as e:
            raise RuntimeError(f"Error deleting directory {input_dir}: {e}") from e
    return summary


def _print_summary(summary, show_timing=False):
    print("\n" + "="*60, file=sys.stderr)
    print("SUMMARY", file=sys.stderr)
    print("="*60, file=sys.stderr)

    if show_timing:
        slowest = sorted(summary['results'], key=lambda r: r['elapsed_ms'], reverse=True)[:10]
        if slowest:
            print("[DEBUG] Timing: top 10 slowest files (ms):", file=sys.stderr)
            for r in slowest:
                print(f"[DEBUG]   {r['path']} total={r['elapsed_ms']}", file=sys.stderr)

    print(f"Imported: {summary['succeeded']:,}", file=sys.stderr)
    print(f"Failed:   {len(summary['failed']):,}", file=sys.stderr)
    print(f"Total:    {summary['total']:,}", file=sys.stderr)
    for path in summary['failed']:
        print(f"  failed: {path}", file=sys.stderr)
    print("="*60, file=sys.stderr)


def split_dump(input_path, output_dir, debug=False, timing=False):
    """Scans then splits a dump; returns the written table file paths."""
    t_scan_start = time.monotonic()
    preamble, postamble = scan_sql_dump(input_path, show_progress=not debug)
    scan_ms = int((time.monotonic() - t_scan_start) * 1000)

    t_split_start = time.monotonic()
    written = split_sql_dump(input_path, output_dir, preamble, postamble, show_progress=not debug)
    split_ms = int((time.monotonic() - t_split_start) * 1000)

    if debug or timing:
        print(f"[DEBUG] Timing: scan took {scan_ms}ms", file=sys.stderr)
        print(f"[DEBUG] Timing: split took {split_ms}ms", file=sys.stderr)
    return written


def split_and_import(input_path, output_dir, database, debug=False, timing=False, **import_options):
    split_dump(input_path, output_dir, debug=debug, timing=timing)
    return import_sql_files(output_dir, database, debug=debug, timing=timing, **import_options)


def _add_import_arguments(parser):
    parser.add_argument("--database", required=True, help="Target database name")
    parser.add_argument("--host", default=None, help="Database host")
    parser.add_argument("--port", type=int, default=None, help="Database port")
    parser.add_argument("--user", default=None, help="Database user")
    parser.add_argument("--password", default=None, help="Database password")
    parser.add_argument("--parallel", type=int, default=None,
                        help="Concurrent imports per batch (-1 for all; default MULTIDUMP_PARALLEL or CPU count)")
    parser.add_argument("--delete", action="store_true", help="Delete the input directory after importing")
    parser.add_argument("--client", default=None,
                        help="Client command to run (default MULTIDUMP_CLIENT or mysql)")


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--debug", action="store_true", help="Enable debug logging and disable progress bars")
    common.add_argument("--timing", action="store_true", help="Emit timing diagnostics even without --debug")

    parser = argparse.ArgumentParser(prog="multidump", description="Split MySQL dump files per table and import them in parallel.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    split_parser = subparsers.add_parser("split", parents=[common], help="Split a dump into one file per table")
    split_parser.add_argument("--input", required=True, help="SQL dump file")
    split_parser.add_argument("--output", required=True, help="Directory for the table files")

    import_parser = subparsers.add_parser("import", parents=[common], help="Import a directory of table files")
    import_parser.add_argument("--input", required=True, help="Directory of table files")
    _add_import_arguments(import_parser)

    split_import_parser = subparsers.add_parser("split-import", parents=[common],
                                                help="Split a dump, then import the table files")
    split_import_parser.add_argument("--input", required=True, help="SQL dump file")
    split_import_parser.add_argument("--output", required=True, help="Directory for the table files")
    _add_import_arguments(split_import_parser)
    return parser


def _import_options(args):
    return {
        'host': args.host,
        'port': args.port,
        'user': args.user,
        'password': args.password,
        'parallel': args.parallel,
        'delete': args.delete,
        'client': args.client,
    }


def main(argv=None):
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        parser.print_help()
        sys.exit(1)
    args = parser.parse_args(argv)

    if args.command == "split":
        split_dump(args.input, args.output, debug=args.debug, timing=args.timing)
    elif args.command == "import":
        import_sql_files(args.input, args.database, debug=args.debug, timing=args.timing, **_import_options(args))
    else:
        split_and_import(args.input, args.output, args.database, debug=args.debug, timing=args.timing,
                         **_import_options(args))
    return 0


if __name__ == "__main__":
    sys.exit(main())
