# Copyright (c) Syntropy Systems
"""Stand-in workload for process-level tests.

Usage: fake_workload.py PORT MODE

MODE ``steady`` prints one optimization at startup and serves forever.
MODE ``crash`` serves until ``/crash`` is requested, then prints three
deopt lines and exits with code 1.
MODE ``warmup-crash`` answers one request, then exits with code 3 on the next.
MODE ``hang`` never starts listening.
"""

import os
import sys
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


def main() -> None:
    port = int(sys.argv[1])
    mode = sys.argv[2]
    if mode == "hang":
        print("hanging", flush=True)
        time.sleep(3600)
        return
    handled = []

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path == "/crash" and mode == "crash":
                for _ in range(3):
                    print("[Deoptimizing foo reason=wrong map]", flush=True)
                os._exit(1)
            handled.append(self.path)
            if mode == "warmup-crash" and len(handled) > 1:
                os._exit(3)
            body = b"ok"
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args) -> None:
            pass

    server = ThreadingHTTPServer(("127.0.0.1", port), Handler)
    if mode == "steady":
        print("[Optimizing handle reason=hot and stable]", flush=True)
        print("[Optimized handle]", flush=True)
    print(f"listening on {port}", flush=True)
    server.serve_forever()


if __name__ == "__main__":
    main()
