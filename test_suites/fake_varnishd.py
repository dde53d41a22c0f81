#!/usr/bin/env python3
"""Stand-in for varnishd used by the hermetic lifecycle tests.

It understands the arguments vtest passes, connects back to the -M
address, speaks the admin protocol, and publishes a -T endpoint plus the
_.vsm_mgt files so vadm.connect() can find it by name.

Behaviour is selected with FAKE_VARNISHD_MODE:
    ok             normal startup (reports "starting" once, then "running")
    exit           exit with status 3 before connecting
    bad_challenge  send a 200 banner instead of the auth challenge
    short_nonce    send a 16 byte nonce
    stopped        the child reports "stopped" after start
    never_running  the child never leaves "starting"
    never_connect  publish the workdir but never dial the -M address
    ipv6           report an IPv6 listen address

VCL containing FAIL_COMPILE is refused with status 106. Every received VCL
is written to <workdir>/loaded.vcl and argv to <workdir>/argv.json.
"""

import hashlib
import json
import os
import socket
import sys
import threading
import time

MODE = os.environ.get("FAKE_VARNISHD_MODE", "ok")
NONCE = b"abcdefghijklmnopqrstuvwxyz012345"
LISTEN_PORT = 8080

state = {
    "child": "stopped",
    "status_calls": 0,
    "vcl": None,
    "active": None,
}
lock = threading.Lock()


def parse_args(argv):
    opts = {"-p": []}
    i = 0
    while i < len(argv):
        flag = argv[i]
        if flag == "-F":
            i += 1
            continue
        value = argv[i + 1]
        if flag == "-p":
            opts["-p"].append(value)
        else:
            opts[flag] = value
        i += 2
    return opts


def frame(status, body):
    if isinstance(body, str):
        body = body.encode()
    return b"%-3d %-8d\n" % (status, len(body)) + body + b"\n"


def digest(secret):
    h = hashlib.sha256()
    h.update(NONCE + b"\n" + secret + NONCE + b"\n")
    return h.hexdigest()


def publish(workdir, secret_path, port):
    mgt = os.path.join(workdir, "_.vsm_mgt")
    os.makedirs(mgt, exist_ok=True)
    with open(os.path.join(mgt, "_.Arg.00000000"), "wb") as f:
        f.write(b"127.0.0.1 %d\n" % port + b"\x00" * 8)
    with open(os.path.join(mgt, "_.Arg.00000001"), "wb") as f:
        f.write(secret_path.encode() + b"\x00" * 8)
    with open(os.path.join(mgt, "_.index"), "wb") as f:
        f.write(
            b"# 1234 1700000000\n"
            b"+ _.Arg.00000000 0 32 Arg -T\n"
            b"+ _.Arg.00000001 0 64 Arg -S\n"
            + b"\x00" * 16
        )


def handle_command(workdir, words, heredoc):
    cmd = words[0] if words else ""
    if cmd == "ping":
        return 200, "PONG %d 1.0" % int(time.time())
    if cmd in ("vcl.inline", "vcl.load"):
        if cmd == "vcl.inline":
            vcl = heredoc
        else:
            try:
                with open(words[2]) as f:
                    vcl = f.read()
            except OSError:
                return 106, "Cannot read file '%s'" % words[2]
        with open(os.path.join(workdir, "loaded.vcl"), "w") as f:
            f.write(vcl)
        if "FAIL_COMPILE" in vcl:
            return 106, ("Message from VCC-compiler:\n"
                         "Unknown token 'FAIL_COMPILE' at\n"
                         "('<vcl.inline>' Line 3 Pos 1)\n"
                         "Running VCC-compiler failed, exited with 2\n"
                         "VCL compilation failed")
        with lock:
            state["vcl"] = words[1]
        return 200, "VCL compiled."
    if cmd == "vcl.use":
        with lock:
            if state["vcl"] != words[1]:
                return 106, "No VCL named %s known." % words[1]
            state["active"] = words[1]
        return 200, "VCL '%s' now active" % words[1]
    if cmd == "start":
        with lock:
            state["child"] = "starting" if MODE in ("ok", "ipv6", "never_running") else "stopped"
        return 200, ""
    if cmd == "stop":
        with lock:
            state["child"] = "stopped"
        return 200, ""
    if cmd == "status":
        with lock:
            state["status_calls"] += 1
            if state["child"] == "starting" and MODE != "never_running" and state["status_calls"] > 1:
                state["child"] = "running"
            return 200, "Child in state %s" % state["child"]
    if cmd == "debug.listen_address":
        address = "::1" if MODE == "ipv6" else "127.0.0.1"
        return 200, "a0 %s %d\n" % (address, LISTEN_PORT)
    return 101, "Unknown request.\nType 'help' for more info."


def serve(conn, workdir, secret):
    f = conn.makefile("rb")
    if MODE == "bad_challenge":
        conn.sendall(frame(200, "Varnish Cache CLI 1.0"))
    elif MODE == "short_nonce":
        conn.sendall(frame(107, NONCE[:16]))
    else:
        conn.sendall(frame(107, NONCE + b"\n\nAuthentication required.\n"))

    line = f.readline()
    if line.decode().strip() != "auth " + digest(secret):
        conn.sendall(frame(107, "Authentication required."))
        conn.close()
        return
    conn.sendall(frame(200, "-----------------------------\nVarnish Cache CLI 1.0\n"))

    while True:
        line = f.readline()
        if not line:
            break
        text = line.decode().rstrip("\n")
        words = text.split()
        heredoc = None
        if "<<" in words:
            delimiter = words[words.index("<<") + 1]
            body = []
            while True:
                part = f.readline()
                if not part or part.decode().rstrip("\n") == delimiter:
                    break
                body.append(part.decode())
            heredoc = "".join(body)
        status, body = handle_command(workdir, words, heredoc)
        conn.sendall(frame(status, body))
    conn.close()


def serve_t(listener, workdir, secret):
    while True:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        threading.Thread(target=serve, args=(conn, workdir, secret), daemon=True).start()


def main():
    opts = parse_args(sys.argv[1:])
    if MODE == "exit":
        print("Error: fake varnishd told to exit", file=sys.stderr)
        return 3

    workdir = opts["-n"]
    os.makedirs(workdir, exist_ok=True)
    with open(os.path.join(workdir, "argv.json"), "w") as f:
        json.dump(sys.argv[1:], f)

    secret = os.urandom(32)
    secret_path = os.path.join(workdir, "_.secret")
    with open(secret_path, "wb") as f:
        f.write(secret)

    t_listener = socket.create_server(("127.0.0.1", 0))
    publish(workdir, secret_path, t_listener.getsockname()[1])
    threading.Thread(target=serve_t, args=(t_listener, workdir, secret), daemon=True).start()

    if MODE == "never_connect":
        time.sleep(300)
        return 0

    host, _, port = opts["-M"].rpartition(":")
    conn = socket.create_connection((host, int(port)))
    serve(conn, workdir, secret)
    return 0


if __name__ == "__main__":
    sys.exit(main())
