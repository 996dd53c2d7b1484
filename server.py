# server.py
import io
import os
import socket
import sys
import threading
import traceback
from queue import Queue
from urllib.parse import unquote, urlparse

from errors import RequestError

CRLF = "\r\n"
SERVER_NAME = "RootSum/1.0"
MAX_LINE = 8192
MAX_HEADER_BYTES = 64 * 1024
ACCEPT_POLL = 0.5  # seconds between checks of the closed flag


def log(msg):
    print(f"[INFO] {msg} pid={os.getpid()}...", flush=True)


def err_log(msg, trace):
    print(f"[ERROR] {msg}\n {trace} pid={os.getpid()}...", flush=True)


class ThreadPool:
    def __init__(self, max_threads=5, initial_threads=2):
        self.max_threads = max_threads
        self.task_queue = Queue()
        self.threads = []
        self.lock = threading.Lock()
        self.running_threads = set()

        # start initial threads
        self._start_threads(initial_threads)

    def _worker(self):
        while True:
            func, args, kwargs = self.task_queue.get()
            if func is None:  # stop signal
                self.task_queue.task_done()
                break
            with self.lock:
                self.running_threads.add(threading.current_thread())
            try:
                func(*args, **kwargs)
            except Exception:
                err_log("ThreadPool: task failed", traceback.format_exc())
            finally:
                with self.lock:
                    self.running_threads.discard(threading.current_thread())
                self.task_queue.task_done()

    def _start_threads(self, n=1):
        for _ in range(n):
            t = threading.Thread(target=self._worker, daemon=True)
            t.start()
            self.threads.append(t)

    def submit(self, func, *args, **kwargs):
        """
        Queue a task for the next idle thread. When every thread is busy and
        max_threads allows it, start one more thread first.
        """
        with self.lock:
            busy = len(self.running_threads) + self.task_queue.qsize()
            if busy >= len(self.threads) and len(self.threads) < self.max_threads:
                self._start_threads(1)

        self.task_queue.put((func, args, kwargs))

    def shutdown(self, wait=False):
        """Send a stop signal to every thread."""
        with self.lock:
            threads, self.threads = self.threads, []
        for _ in threads:
            self.task_queue.put((None, (), {}))
        if wait:
            for t in threads:
                t.join()

    def status(self):
        with self.lock:
            total_threads = len(self.threads)
            running = len(self.running_threads)      # busy threads
            idle_threads = total_threads - running   # threads free to delete
            can_delete = idle_threads if idle_threads > 0 else 0
            can_add = max(self.max_threads - total_threads, 0)

        return can_add, can_delete


class HTTPRequest:
    """HTTP/1.x request parsing from a buffered socket reader."""
    http_methods_by_version = {
        "HTTP/1.0": ["GET", "POST", "HEAD"],
        "HTTP/1.1": ["GET", "POST", "HEAD", "PUT", "DELETE", "OPTIONS", "TRACE", "PATCH"],
    }

    def __init__(self, rfile):
        self.rfile = rfile
        self.method = None
        self.path = None
        self.query = None
        self.version = None
        self.headers = {}
        self.body = b''
        self.close = False

    @property
    def keep_alive(self):
        conn = self.headers.get('Connection', '').lower()
        if 'close' in conn:
            return False
        if 'keep-alive' in conn:
            return True
        return self.version == 'HTTP/1.1'

    def _readline(self):
        line = self.rfile.readline(MAX_LINE + 1)
        if len(line) > MAX_LINE:
            raise RequestError("request line or header too long")
        return line

    def read_header(self):
        lines = []
        total = 0
        while True:
            line = self._readline()
            if not line:
                # peer closed before the header block ended
                self.close = True
                return lines if lines else None
            total += len(line)
            if total > MAX_HEADER_BYTES:
                raise RequestError("header block too large")
            line = line.rstrip(b'\r\n')
            if not line:
                if not lines:
                    # stray CRLF between pipelined requests
                    continue
                return lines
            lines.append(line.decode("iso-8859-1"))

    def parse(self):
        """
        Read the request line and headers. Returns False when the peer closed
        the connection without sending a request.
        """
        lines = self.read_header()
        if lines is None:
            return False
        if self.close:
            raise RequestError("connection closed inside header block")

        try:
            self.method, full_path, self.version = lines[0].split(' ')
        except ValueError:
            raise RequestError(f"malformed request line: {lines[0]!r}") from None
        if self.version not in self.http_methods_by_version:
            raise RequestError(f"unsupported version: {self.version}")
        if self.method not in self.http_methods_by_version[self.version]:
            raise RequestError(f"method {self.method} not allowed for {self.version}")
        parsed_url = urlparse(full_path)
        # WSGI wants PATH_INFO decoded, as latin-1 "bytes in a str"
        self.path = unquote(parsed_url.path, encoding="latin-1")
        self.query = parsed_url.query

        for line in lines[1:]:
            try:
                key, value = line.split(":", 1)
            except ValueError:
                err_log("Invalid header line", repr(line))
                continue
            self.headers[key.strip().title()] = value.strip()
        return True

    def read_body(self):
        chunked = self.headers.get('Transfer-Encoding', '')
        if chunked and chunked.split(',')[-1].strip().lower() == 'chunked':
            self.body = self._read_chunked()
            return self.body

        try:
            clen = int(self.headers.get('Content-Length', 0))
        except ValueError:
            raise RequestError("invalid Content-Length") from None
        if clen < 0:
            raise RequestError("invalid Content-Length")
        self.body = self._read_exact(clen)
        return self.body

    def _read_exact(self, n):
        data = self.rfile.read(n) if n else b''
        if len(data) < n:
            self.close = True
            raise RequestError("connection closed while reading body")
        return data

    def _read_chunked(self):
        body = b''
        while True:
            line = self._readline()
            if not line.endswith(b'\n'):
                self.close = True
                raise RequestError("truncated chunk size line")
            size = line.split(b';', 1)[0].strip()
            try:
                i = int(size, 16)
            except ValueError:
                raise RequestError(f"invalid chunk size: {size!r}") from None
            if i < 0:
                raise RequestError(f"invalid chunk size: {size!r}")
            if i == 0:
                break
            chunk = self._read_exact(i + 2)
            if chunk[i:] != b'\r\n':
                raise RequestError("chunk not terminated by CRLF")
            body += chunk[:i]

        # trailer section ends at an empty line
        while True:
            line = self._readline()
            if line in (b'\r\n', b'\n', b''):
                break
        return body


class WSGIHandler:
    """WSGI app call & HTTP response creation."""
    def __init__(self, app, host='localhost', port=80, keep_alive_timeout=5.0, verbose=False):
        self.app = app
        self.host = host
        self.port = port
        self.keep_alive_timeout = keep_alive_timeout
        self.verbose = verbose

    def trace(self, msg):
        if self.verbose:
            log(msg)

    def handle(self, conn, addr):
        """Serve every request on one connection, then close it."""
        conn.settimeout(self.keep_alive_timeout)
        rfile = conn.makefile('rb')
        try:
            keep_alive = True
            while keep_alive:
                request = HTTPRequest(rfile)
                try:
                    if not request.parse():
                        break
                    request.read_body()
                except RequestError as e:
                    self.trace(f"{type(self).__name__}: Bad request from {addr}: {e}")
                    self.send(conn, self.error_response("400 Bad Request"))
                    break
                except (socket.timeout, ConnectionError):
                    self.trace(f"{type(self).__name__}: Connection idle or reset, closing {addr}")
                    break

                keep_alive = request.keep_alive
                self.trace(f"Client {addr} requested {request.method} {request.path}, keep-alive={keep_alive}")
                status, headers, body = self.run_app(request, addr)
                if not self.send(conn, self.build_response(status, headers, body, keep_alive)):
                    break
        finally:
            rfile.close()
            conn.close()
            self.trace(f"{type(self).__name__}: Connection closed {addr}")

    def run_app(self, request, addr=None):
        environ = self.build_environ(request, addr)
        response_status = None
        response_headers = None

        def start_response(status, headers, exc_info=None):
            nonlocal response_status, response_headers
            response_status = status
            response_headers = headers

        try:
            result = self.app(environ, start_response)
            try:
                body_data = b''.join(result)
            finally:
                if hasattr(result, 'close'):
                    result.close()
        except Exception:
            err_log(f"{type(self).__name__}: Error generating response for {request.path}", traceback.format_exc())
            return self.internal_error()
        if response_status is None:
            err_log(f"{type(self).__name__}: App never called start_response for {request.path}", "")
            return self.internal_error()
        return response_status, response_headers, body_data

    def internal_error(self):
        return "500 Internal Server Error", [("Content-Type", "text/plain; charset=utf-8")], b"Internal Server Error"

    def build_response(self, status, headers, body, keep_alive):
        # repeated headers such as Set-Cookie are kept as sent
        own = ("server", "connection")
        final_headers = [(k, v) for k, v in headers if k.lower() not in own]
        if not any(k.lower() == "content-length" for k, _ in final_headers):
            final_headers.append(("Content-Length", str(len(body))))
        final_headers.append(("Server", SERVER_NAME))
        final_headers.append(("Connection", "keep-alive" if keep_alive else "close"))
        header_lines = "".join(f"{k}: {v}{CRLF}" for k, v in final_headers)
        return f"HTTP/1.1 {status}{CRLF}{header_lines}{CRLF}".encode("iso-8859-1") + body

    def error_response(self, status):
        body = status.split(' ', 1)[1].encode()
        return self.build_response(status, [("Content-Type", "text/plain; charset=utf-8")], body, False)

    def send(self, conn, data: bytes) -> bool:
        try:
            conn.sendall(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            err_log(f"{type(self).__name__}: connection error while sending", str(e))
            return False
        except socket.timeout:
            err_log(f"{type(self).__name__}: send timeout", "")
            return False
        return True

    def build_environ(self, req: HTTPRequest, addr=None):
        environ = {
            "REQUEST_METHOD": req.method,
            "SCRIPT_NAME": '',
            "PATH_INFO": req.path,
            "QUERY_STRING": req.query,
            "SERVER_NAME": self.host,
            "SERVER_PORT": str(self.port),
            "SERVER_PROTOCOL": req.version,
            "CONTENT_TYPE": req.headers.get("Content-Type", ""),
            "CONTENT_LENGTH": str(len(req.body)),
            "wsgi.version": (1, 0),
            "wsgi.input": io.BytesIO(req.body),
            "wsgi.errors": sys.stderr,
            "wsgi.multithread": True,
            "wsgi.multiprocess": False,
            "wsgi.run_once": False,
            "wsgi.url_scheme": 'http',
        }
        if addr:
            environ["REMOTE_ADDR"] = str(addr[0])
        for k, v in req.headers.items():
            if k in ("Content-Type", "Content-Length"):
                continue
            environ[f"HTTP_{k.upper().replace('-', '_')}"] = v
        return environ


class HTTPServer:
    """Main server class."""
    def __init__(self, host='0.0.0.0', port=8000, max_threads=40, initial_threads=10,
                 keep_alive_timeout=5.0, verbose=False):
        self.host = host
        self.s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self.s.bind((host, port))
            self.s.listen(128)
        except OSError:
            self.s.close()
            raise
        self.s.settimeout(ACCEPT_POLL)
        # port 0 binds an ephemeral port
        self.port = self.s.getsockname()[1]
        self.max_threads = max_threads
        self.initial_threads = initial_threads
        self.keep_alive_timeout = keep_alive_timeout
        self.verbose = verbose
        self.handler = None
        self.pool = None
        self.closed = threading.Event()

    def set_app(self, app):
        self.handler = WSGIHandler(app, self.host, self.port, self.keep_alive_timeout, self.verbose)

    def serve_forever(self):
        if self.handler is None:
            raise RuntimeError("set_app() must be called before serve_forever()")
        self.pool = ThreadPool(self.max_threads, self.initial_threads)
        log(f"Server is running on port {self.port}")
        while not self.closed.is_set():
            try:
                conn, addr = self.s.accept()
            except socket.timeout:
                continue
            except OSError:
                if self.closed.is_set():
                    break
                err_log("accept error", traceback.format_exc())
                continue
            self.handler.trace(f"{type(self).__name__}: Accepted new connection from {addr}")
            self.pool.submit(self.handler.handle, conn, addr)

    def server_close(self):
        self.closed.set()
        self.s.close()
        if self.pool is not None:
            self.pool.shutdown()
