#!/usr/bin/env python3
import re
import argparse
import multiprocessing
import queue
import time
import psutil
import json
from datetime import datetime
from dataclasses import dataclass, field
from typing import NamedTuple
import platform
import getpass
import secrets
import signal
import struct
import os
import base64
import logging
import sys

from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger('edvanity')

KEY_TYPE = 'ssh-ed25519'
AUTH_MAGIC = b'openssh-key-v1\x00'
CIPHER_NONE = 'none'
KDF_NONE = 'none'
PEM_LABEL = 'OPENSSH PRIVATE KEY'
PEM_LINE_WIDTH = 70

PUBLIC_KEY_SIZE = 32
PRIVATE_KEY_SIZE = 64
CHECK_SIZE = 4
BLOCK_SIZE = 8

# Every ed25519 candidate starts with this, whatever the key material
ED25519_HEADER = 'AAAAC3NzaC1lZDI1NTE5AAAAI'


class VanityError(Exception):
    """Base class for all search failures"""


class EntropyFailure(VanityError):
    """The keypair generator could not produce a key"""


class EncodingFailure(VanityError):
    """A key record could not be encoded or decoded"""


class FileSystemFailure(VanityError):
    """An output file could not be created or written"""

    def __init__(self, path, reason):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ConfigurationError(VanityError):
    """Invalid search parameters, detected before the search starts"""


class SearchAborted(VanityError):
    """The search could not continue; carries whatever was persisted"""

    def __init__(self, reason, result=None):
        super().__init__(reason)
        self.result = result


@dataclass(frozen=True)
class KeyPair:
    """An ed25519 keypair in OpenSSH layout (private key is seed || public key)"""
    public_key: bytes
    private_key: bytes

    def __post_init__(self):
        if len(self.public_key) != PUBLIC_KEY_SIZE:
            raise EncodingFailure(f"public key must be {PUBLIC_KEY_SIZE} bytes, got {len(self.public_key)}")
        if len(self.private_key) != PRIVATE_KEY_SIZE:
            raise EncodingFailure(f"private key must be {PRIVATE_KEY_SIZE} bytes, got {len(self.private_key)}")

    @property
    def seed(self):
        return self.private_key[:32]


def write_string(buf, value):
    """Append a length-prefixed SSH string (uint32 big-endian length + bytes)"""
    if isinstance(value, str):
        value = value.encode('utf-8')
    try:
        buf += struct.pack('>I', len(value))
    except struct.error as e:
        raise EncodingFailure(f"field too long to encode: {e}") from e
    buf += value
    return len(value)


def encode_public_blob(public_key):
    """OpenSSH wire blob: key type tag followed by the raw public key"""
    buf = bytearray()
    write_string(buf, KEY_TYPE)
    write_string(buf, public_key)
    return bytes(buf)


def encode_private_record(public_key, private_key, comment, check=None):
    """
    Build the private section of an openssh-key-v1 file.

    The section is emitted as an SSH string whose declared length is rounded
    up to a multiple of 8. Padding bytes count up from 1 so a reader can tell
    a correctly padded record from a truncated one.
    """
    if check is None:
        check = secrets.token_bytes(CHECK_SIZE)
    if len(check) != CHECK_SIZE:
        raise EncodingFailure(f"check value must be {CHECK_SIZE} bytes")

    record = bytearray()
    record += check
    record += check
    write_string(record, KEY_TYPE)
    write_string(record, public_key)
    write_string(record, private_key)
    write_string(record, comment)

    padding = (BLOCK_SIZE - len(record) % BLOCK_SIZE) % BLOCK_SIZE
    record += bytes(range(1, padding + 1))

    buf = bytearray()
    write_string(buf, bytes(record))
    return bytes(buf)


def encode_private_payload(keypair, comment, check=None):
    """Full unencrypted openssh-key-v1 payload holding exactly one keypair"""
    buf = bytearray(AUTH_MAGIC)
    write_string(buf, CIPHER_NONE)
    write_string(buf, KDF_NONE)
    write_string(buf, b'')
    buf += struct.pack('>I', 1)
    write_string(buf, encode_public_blob(keypair.public_key))
    buf += encode_private_record(keypair.public_key, keypair.private_key, comment, check)
    return bytes(buf)


def armor_private_key(payload):
    """Wrap a binary payload in the OPENSSH PRIVATE KEY text envelope"""
    body = base64.b64encode(payload).decode('ascii')
    lines = [body[i:i + PEM_LINE_WIDTH] for i in range(0, len(body), PEM_LINE_WIDTH)]
    return (
        f"-----BEGIN {PEM_LABEL}-----\n"
        + '\n'.join(lines)
        + f"\n-----END {PEM_LABEL}-----\n"
    )


def format_public_key(public_key, comment):
    """Single-line authorized_keys style public key"""
    return f"{KEY_TYPE} {encode_candidate(public_key)} {comment}\n"


class DecodedKey(NamedTuple):
    public_key: bytes
    private_key: bytes
    comment: str
    check: bytes


class _Reader:
    """Sequential reader over SSH wire data"""

    def __init__(self, data):
        self.data = data
        self.pos = 0

    def take(self, n):
        if self.pos + n > len(self.data):
            raise EncodingFailure(f"truncated record: wanted {n} bytes at offset {self.pos}")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def uint32(self):
        return struct.unpack('>I', self.take(4))[0]

    def string(self):
        return self.take(self.uint32())

    def remaining(self):
        return len(self.data) - self.pos


def decode_private_key(text):
    """Parse an armored, unencrypted ed25519 private key back into its fields"""
    lines = [line.strip() for line in text.strip().splitlines()]
    if not lines or lines[0] != f"-----BEGIN {PEM_LABEL}-----" or lines[-1] != f"-----END {PEM_LABEL}-----":
        raise EncodingFailure(f"missing {PEM_LABEL} envelope")
    try:
        data = base64.b64decode(''.join(lines[1:-1]), validate=True)
    except ValueError as e:
        raise EncodingFailure(f"invalid base64 body: {e}") from e

    reader = _Reader(data)
    if reader.take(len(AUTH_MAGIC)) != AUTH_MAGIC:
        raise EncodingFailure("bad magic")
    if reader.string() != CIPHER_NONE.encode() or reader.string() != KDF_NONE.encode():
        raise EncodingFailure("encrypted keys are not supported")
    if reader.string() != b'':
        raise EncodingFailure("unexpected KDF options")
    if reader.uint32() != 1:
        raise EncodingFailure("expected exactly one key")

    blob = _Reader(reader.string())
    if blob.string() != KEY_TYPE.encode():
        raise EncodingFailure("not an ed25519 key")
    listed_public = blob.string()

    section = reader.string()
    if reader.remaining():
        raise EncodingFailure("trailing data after private section")
    if len(section) % BLOCK_SIZE:
        raise EncodingFailure(f"private section length {len(section)} is not a multiple of {BLOCK_SIZE}")

    record = _Reader(section)
    check = record.take(CHECK_SIZE)
    if record.take(CHECK_SIZE) != check:
        raise EncodingFailure("check values differ")
    if record.string() != KEY_TYPE.encode():
        raise EncodingFailure("private section is not ed25519")
    public_key = record.string()
    private_key = record.string()
    comment = record.string()
    padding = record.take(record.remaining())
    if padding != bytes(range(1, len(padding) + 1)):
        raise EncodingFailure("invalid padding")
    if public_key != listed_public:
        raise EncodingFailure("public key list does not match private section")

    try:
        comment = comment.decode('utf-8')
    except UnicodeDecodeError as e:
        raise EncodingFailure(f"comment is not valid UTF-8: {e}") from e

    return DecodedKey(public_key, private_key, comment, check)


def compile_condition(pattern, ignore_case=False):
    """Compile the search condition, rejecting malformed patterns up front"""
    flags = re.IGNORECASE if ignore_case else 0
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise ConfigurationError(f"invalid search condition {pattern!r}: {e}") from e


def encode_candidate(public_key):
    """Standard padded base64 of the public blob, the string the condition sees"""
    return base64.b64encode(encode_public_blob(public_key)).decode('ascii')


def match_candidate(condition, candidate):
    return condition.search(candidate) is not None


def is_match(condition, public_key):
    return match_candidate(condition, encode_candidate(public_key))


FOUND = 'found'
COUNT = 'count'
DONE = 'done'
ERROR = 'error'
QUIT = 'quit'


class Message(NamedTuple):
    kind: str
    worker_id: int
    payload: object = None


def generate_keypair():
    """Generate a fresh ed25519 keypair as raw bytes (picklable across processes)"""
    try:
        private_key = ed25519.Ed25519PrivateKey.generate()
        seed = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
    except Exception as e:
        raise EntropyFailure(f"ed25519 key generation failed: {e}") from e
    return KeyPair(public_key=public, private_key=seed + public)


def _quit_requested(control_queue):
    try:
        message = control_queue.get_nowait()
    except queue.Empty:
        return False
    return message.kind == QUIT


def search_worker(worker_id, condition, report_queue, control_queue, result_queue, keygen=generate_keypair):
    """
    Generate keypairs until told to quit.

    Attempts are only tallied to the coordinator when a match is found and on
    shutdown. The control queue is polled once per attempt and never blocks.
    """
    count = 0
    try:
        while True:
            keypair = keygen()
            count += 1
            candidate = encode_candidate(keypair.public_key)
            if match_candidate(condition, candidate):
                report_queue.put(Message(FOUND, worker_id, candidate))
                report_queue.put(Message(COUNT, worker_id, count))
                count = 0
                result_queue.put(keypair)
            if _quit_requested(control_queue):
                # Nothing else is ever read from this worker's control queue
                close = getattr(control_queue, 'close', None)
                if close is not None:
                    close()
                break
    except EntropyFailure as e:
        logger.error(f"Worker {worker_id}: {e}")
        report_queue.put(Message(ERROR, worker_id, str(e)))
    report_queue.put(Message(COUNT, worker_id, count))
    report_queue.put(Message(DONE, worker_id))


def _worker_main(*args):
    # Ctrl+C is handled by the coordinator, which cancels workers explicitly
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    search_worker(*args)


def key_basename(index):
    return f"id_ed25519_{index:02d}"


def save_keypair(keypair, comment, basename, output_dir='.'):
    """Write the private key (mode 600) and its .pub companion"""
    priv_path = os.path.join(output_dir, basename)
    pub_path = f"{priv_path}.pub"

    private_text = armor_private_key(encode_private_payload(keypair, comment))
    public_text = format_public_key(keypair.public_key, comment)

    try:
        fd = os.open(priv_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(private_text)
    except OSError as e:
        raise FileSystemFailure(priv_path, e.strerror or str(e)) from e

    try:
        with open(pub_path, 'w') as f:
            f.write(public_text)
    except OSError as e:
        raise FileSystemFailure(pub_path, e.strerror or str(e)) from e

    return priv_path, pub_path


@dataclass(frozen=True)
class SearchConfig:
    condition: re.Pattern
    comment: str
    limited: int = 1
    unlimited: bool = False
    parallel: int = 1
    report_capacity: int = 1024
    output_dir: str = '.'
    poll_interval: float = 0.5

    def __post_init__(self):
        if self.limited < 1:
            raise ConfigurationError(f"--limited must be at least 1, got {self.limited}")
        if self.parallel < 1:
            raise ConfigurationError(f"--parallel must be at least 1, got {self.parallel}")
        if self.report_capacity < 1:
            raise ConfigurationError(f"--report-capacity must be at least 1, got {self.report_capacity}")
        if not os.path.isdir(self.output_dir):
            raise ConfigurationError(f"output directory {self.output_dir!r} does not exist")


@dataclass
class SearchResult:
    found: int = 0
    total_generated: int = 0
    elapsed_ns: int = 0
    files: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    interrupted: bool = False

    @property
    def keys_per_second(self):
        return throughput(self.total_generated, self.elapsed_ns)


def throughput(total, elapsed_ns):
    """Keys per second; zero when no measurable time has passed"""
    if elapsed_ns <= 0:
        return 0.0
    return total * 1e9 / elapsed_ns


class Coordinator:
    """Run the worker pool and turn accepted matches into key files"""

    def __init__(self, config, context=None):
        self.config = config
        self.ctx = context or multiprocessing.get_context()
        self.found = 0
        self.total_generated = 0
        self.accepted = []
        self.pending = 0
        self.finished = set()
        self.abort_reason = None
        self._quit_sent = False

    def _quota_reached(self):
        return not self.config.unlimited and self.found >= self.config.limited

    def _broadcast_quit(self):
        """Send one QUIT per worker; never resent"""
        if self._quit_sent:
            return
        self._quit_sent = True
        for control in self.controls:
            control.put(Message(QUIT, -1))

    def _accept(self, keypair):
        if self.config.unlimited or len(self.accepted) < self.config.limited:
            self.accepted.append(keypair)
        else:
            logger.info(f"Discarding surplus match {encode_candidate(keypair.public_key)}")

    def _collect_results(self, block):
        """Pull delivered pairs off the result queue, one per reported match"""
        while self.pending:
            try:
                keypair = self.result_queue.get(block, self.config.poll_interval if block else None)
            except queue.Empty:
                if block:
                    continue
                return
            self.pending -= 1
            self._accept(keypair)

    def _handle(self, message):
        if message.kind == FOUND:
            self.found += 1
            self.pending += 1
            logger.info(f"Found: {message.payload}")
            if self._quota_reached():
                self._broadcast_quit()
        elif message.kind == COUNT:
            self.total_generated += message.payload
        elif message.kind == ERROR:
            self.abort_reason = f"worker {message.worker_id}: {message.payload}"
            self._broadcast_quit()
        elif message.kind == DONE:
            self.finished.add(message.worker_id)
        else:
            logger.warning(f"Unknown message {message!r}")

    def _reap_dead_workers(self):
        for worker_id, process in enumerate(self.processes):
            if worker_id not in self.finished and not process.is_alive() and process.exitcode not in (None, 0):
                logger.error(f"Worker {worker_id} died with exit code {process.exitcode}")
                self.finished.add(worker_id)
                if self.abort_reason is None:
                    self.abort_reason = f"worker {worker_id} exited with code {process.exitcode}"
                self._broadcast_quit()

    def _message_loop(self):
        n = len(self.controls)
        while not (self._quit_sent and len(self.finished) == n):
            try:
                message = self.report_queue.get(timeout=self.config.poll_interval)
            except queue.Empty:
                self._collect_results(block=False)
                self._reap_dead_workers()
                continue
            self._handle(message)
            self._collect_results(block=False)

    def _start_workers(self):
        cfg = self.config
        self.report_queue = self.ctx.Queue(cfg.report_capacity)
        self.result_queue = self.ctx.Queue(cfg.limited)
        self.controls = [self.ctx.Queue() for _ in range(cfg.parallel)]
        self.processes = []
        for i in range(cfg.parallel):
            p = self.ctx.Process(
                target=_worker_main,
                args=(i, cfg.condition, self.report_queue, self.controls[i], self.result_queue),
                daemon=True
            )
            self.processes.append(p)
            p.start()

    def _stop_workers(self):
        for p in self.processes:
            p.join(timeout=5)
            if p.is_alive():
                logger.warning(f"Worker pid {p.pid} did not exit, terminating")
                p.terminate()
                p.join()

    def persist(self, result):
        """Write every accepted pair; one failed pair does not stop the rest"""
        for index, keypair in enumerate(self.accepted):
            basename = key_basename(index)
            try:
                paths = save_keypair(keypair, self.config.comment, basename, self.config.output_dir)
            except (FileSystemFailure, EncodingFailure) as e:
                logger.error(f"Could not save {basename}: {e}")
                result.failures.append(e)
                continue
            logger.info(f"Saved {paths[0]} and {paths[1]}")
            result.files.append(paths)

    def run(self):
        result = SearchResult()
        self._start_workers()
        start = time.monotonic_ns()
        try:
            try:
                self._message_loop()
            except KeyboardInterrupt:
                logger.warning("Interrupted, stopping workers")
                result.interrupted = True
                self._broadcast_quit()
                self._message_loop()
            # A dead worker may have reported a match it never delivered
            self._collect_results(block=self.abort_reason is None)
        finally:
            end = time.monotonic_ns()
            self._stop_workers()

        result.found = self.found
        result.total_generated = self.total_generated
        result.elapsed_ns = end - start
        self.persist(result)

        logger.info(f"Time: {result.elapsed_ns / 1e9:.2f} sec")
        logger.info(f"Total Generated Pairs: {result.total_generated} pairs")
        logger.info(f"Throughput: {result.keys_per_second:.0f} pairs/sec")

        if self.abort_reason is not None:
            raise SearchAborted(self.abort_reason, result)
        return result


def build_report(config, result):
    """Run summary with system information, suitable for json.dump"""
    keys_per_second = result.keys_per_second
    return {
        'timestamp': datetime.now().isoformat(),
        'system_info': {
            'cpu_model': platform.processor(),
            'cpu_count': multiprocessing.cpu_count(),
            'physical_cores': psutil.cpu_count(logical=False),
            'logical_cores': psutil.cpu_count(logical=True),
            'memory_gb': psutil.virtual_memory().total / (1024**3),
            'platform': platform.platform()
        },
        'search_config': {
            'condition': config.condition.pattern,
            'ignore_case': bool(config.condition.flags & re.IGNORECASE),
            'comment': config.comment,
            'limited': config.limited,
            'unlimited': config.unlimited,
            'parallel': config.parallel
        },
        'performance_metrics': {
            'total_attempts': result.total_generated,
            'duration': result.elapsed_ns / 1e9,
            'keys_per_second': keys_per_second,
            'keys_per_second_per_worker': keys_per_second / config.parallel
        },
        'found': result.found,
        'files': [list(paths) for paths in result.files],
        'failures': [str(e) for e in result.failures],
        'interrupted': result.interrupted
    }


def default_comment():
    """<user>@<host>, as ssh-keygen would write it"""
    try:
        user = getpass.getuser()
    except (KeyError, OSError) as e:
        raise ConfigurationError(f"cannot determine user name for the default comment, pass --comment: {e}") from e
    return f"{user}@{platform.node()}"


def build_parser():
    parser = argparse.ArgumentParser(
        description="Search for ed25519 SSH keys whose public key matches a regular expression",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        'condition',
        help='Regular expression searched for in the base64 public key (e.g. ^AAAAC3)'
    )
    parser.add_argument(
        '-c', '--comment',
        default=None,
        help='Comment for the key (default: <user>@<host>)'
    )
    parser.add_argument(
        '-l', '--limited', metavar='count',
        type=int,
        default=1,
        help='Search until the specified number of key pairs is found'
    )
    parser.add_argument(
        '-u', '--unlimited',
        action='store_true',
        help='Search key pairs until you stop it with Ctrl+C'
    )
    parser.add_argument(
        '-p', '--parallel', metavar='numproc',
        type=int,
        default=1,
        help='Number of worker processes searching concurrently'
    )
    parser.add_argument(
        '-i', '--ignore-case',
        action='store_true',
        help='Match the condition case-insensitively'
    )
    parser.add_argument(
        '-o', '--output-dir', metavar='dir',
        default='.',
        help='Directory the id_ed25519_NN files are written to'
    )
    parser.add_argument(
        '--report-capacity', metavar='n',
        type=int,
        default=1024,
        help='Capacity of the worker report queue'
    )
    parser.add_argument(
        '--logfile', metavar='logfile',
        help='Output file for search results (JSON)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable debug logging'
    )
    return parser


def config_from_args(args):
    if args.condition.startswith(f"^{KEY_TYPE} "):
        logger.warning(f"The condition is matched against the base64 key only, '{KEY_TYPE} ' will never match")
    return SearchConfig(
        condition=compile_condition(args.condition, args.ignore_case),
        comment=args.comment if args.comment is not None else default_comment(),
        limited=args.limited,
        unlimited=args.unlimited,
        parallel=args.parallel,
        report_capacity=args.report_capacity,
        output_dir=args.output_dir
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        parser.error(str(e))

    logger.info(f"Start ed25519 key search with {config.parallel} worker(s)")
    try:
        result = Coordinator(config).run()
    except SearchAborted as e:
        logger.error(f"Search aborted: {e}")
        return 1

    if args.logfile:
        with open(args.logfile, 'w') as f:
            json.dump(build_report(config, result), f, indent=2)
        logger.info(f"Detailed search results saved to: {args.logfile}")

    if result.failures:
        return 1
    if result.interrupted:
        return 130
    logger.info("Complete ed25519 key search")
    return 0


if __name__ == '__main__':
    sys.exit(main())
