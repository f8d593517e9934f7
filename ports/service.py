"""
Local port lifecycle service.

Answers check/start/stop requests for a (binary, port) pair by inspecting the operating
system on every call. Requests and responses are plain dictionaries:

    request  = {"action": "check" | "start" | "stop", "binary_path": str, "port": int,
                "arguments": str, "hosts_file": str | None, "ip": str | None}
    response = {"action": ..., "binary_path": ..., "port": ..., "state": str, "message": str,
                "ok": bool, "pid": int, "arguments": str, "hosts_file": bool}
"""

import logging
import os
import shlex
import subprocess
import threading
import time

import psutil

import ports.state

ACTIONS = ("check", "start", "stop")
PORT_FLAGS = ("-p", "--port")

# Hard coded polling ceilings
MAX_ATTEMPTS = 10
INTERVAL = 1
SETTLE_DELAY = 0.5


def is_valid_port(port):
    """
    Checks that the given value is an integer TCP port.
    """
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535


def find_port_flag(cmdline, port):
    """
    Returns the index just past the --port flag for the given port in a command line, or None.

    Args:
        cmdline (list): Process command line, one argument per entry
        port (int): Expected port
    """
    for i, arg in enumerate(cmdline):
        if arg in PORT_FLAGS and i + 1 < len(cmdline) and cmdline[i + 1] == str(port):
            return i + 2
        if arg == "--port=%d" % port:
            return i + 1
    return None


def parse_cmd(cmdline, port):
    """
    Recovers the strategy arguments and whether a hosts file was used from the
    command line of a running proxy.

    Args:
        cmdline (list): Process command line, one argument per entry
        port (int): Port the proxy was started on

    Returns:
        dict: {"arguments": str, "hosts_file": bool}
    """
    start = find_port_flag(cmdline, port)
    if start is None:
        return {"arguments": "", "hosts_file": False}
    arguments = []
    hosts_file = False
    rest = cmdline[start:]
    i = 0
    while i < len(rest):
        if rest[i] == "--hosts":
            hosts_file = True
            i += 2
        elif rest[i] == "--ip":
            i += 2
        else:
            arguments.append(rest[i])
            i += 1
    return {"arguments": " ".join(arguments), "hosts_file": hosts_file}


def is_our_binary(cmdline, binary_path):
    """
    Checks whether a command line was launched from the given binary.
    """
    if not cmdline:
        return False
    if binary_path in cmdline:
        return True
    return os.path.basename(cmdline[0]) == os.path.basename(binary_path)


def detach_kwargs():
    """
    Popen arguments that keep the proxy alive independently of the caller.
    """
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS}
    return {"start_new_session": True}


class LocalPortService():
    """
    Port lifecycle service backed by psutil and subprocess on this machine.
    """
    def __init__(self, output_directory=None, max_attempts=MAX_ATTEMPTS, interval=INTERVAL,
                 settle_delay=SETTLE_DELAY, logger=None):
        """
        Args:
            output_directory (str, None): run directory; proxy output goes to <output_directory>/logs/proxy.<port>.log
            max_attempts (int, 10): number of state checks while waiting for a start or stop to take effect
            interval (float, 1): seconds between those checks
            settle_delay (float, 0.5): seconds to wait after launching before checking the process is still alive
            logger (:obj:`logging.Logger`, None): logger to log with
        """
        self.output_directory = output_directory
        self.max_attempts = max_attempts
        self.interval = interval
        self.settle_delay = settle_delay
        self.logger = logger or logging.getLogger(__name__)
        # Popen handles of the proxies we launched, so killed children can be reaped
        self.launched = {}
        self.lock = threading.Lock()

    def handle(self, request):
        """
        Serves one request.

        Args:
            request (dict): Request dictionary (see module docstring)

        Returns:
            dict: Response dictionary
        """
        error = self.validate_request(request)
        if error:
            return {"state": ports.state.ERROR, "message": error, "ok": False}

        action = request["action"]
        binary_path = request["binary_path"]
        port = request["port"]
        if action == "check":
            state = self.get_current_state(port, binary_path)
            ok = state.ok
        elif action == "start":
            state = self.start(port, binary_path, request.get("arguments") or "", request.get("hosts_file"), request.get("ip"))
            ok = isinstance(state, ports.state.InUseByUs)
        else:
            state = self.stop(port, binary_path)
            ok = isinstance(state, ports.state.Free)

        response = {
            "action": action,
            "binary_path": binary_path,
            "port": port,
        }
        response.update(state.to_response())
        response["ok"] = ok
        return response

    @staticmethod
    def validate_request(request):
        """
        Returns an error message for a malformed request, or None.
        """
        if not isinstance(request, dict):
            return "Request is not a dictionary."
        for field in ("action", "binary_path", "port"):
            if field not in request:
                return "Missing required field: %s" % field
        if request["action"] not in ACTIONS:
            return "Unknown action: %s" % request["action"]
        binary_path = request["binary_path"]
        if not isinstance(binary_path, str) or not binary_path.strip():
            return "Binary path must be a non-empty string."
        if not is_valid_port(request["port"]):
            return "Port must be an integer from 1 to 65535."
        if not isinstance(request.get("arguments") or "", str):
            return "Arguments must be a string."
        hosts_file = request.get("hosts_file")
        if hosts_file is not None and not isinstance(hosts_file, str):
            return "Hosts file name must be a string."
        ip = request.get("ip")
        if ip is not None and not isinstance(ip, str):
            return "Listen address must be a string."
        return None

    def find_listener(self, port):
        """
        Finds the socket listening on the given TCP port.

        Returns:
            tuple: (listening (bool), pid (int or None))
        """
        for conn in psutil.net_connections(kind="tcp"):
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            if conn.laddr.port == port:
                return True, conn.pid
        return False, None

    def find_pid_by_cmdline(self, port):
        """
        Looks for a process whose command line carries our port flag. Used when the
        listening socket's owner is hidden from us.
        """
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if find_port_flag(cmdline, port) is not None:
                return proc.info["pid"]
        return None

    def get_current_state(self, port, binary_path):
        """
        Inspects the operating system to find out who owns the port.

        Args:
            port (int): Port to check
            binary_path (str): Path of the proxy binary we launch

        Returns:
            :obj:`ports.state.PortState`: The current state
        """
        if not is_valid_port(port):
            return ports.state.Error("Invalid port number.")
        if not binary_path:
            return ports.state.Error("Binary path cannot be empty.")

        try:
            listening, pid = self.find_listener(port)
            if not listening:
                return ports.state.Free("Port is free")

            if pid is None:
                pid = self.find_pid_by_cmdline(port)
                if pid is None:
                    return ports.state.InUseByOthers("Port is used by another program")

            cmdline = psutil.Process(pid).cmdline()
        except psutil.NoSuchProcess:
            return ports.state.Error("Process exited while it was being inspected.")
        except psutil.AccessDenied:
            return ports.state.Error("Access denied while inspecting port %d." % port)
        except OSError as exc:
            return ports.state.Error("Failed to inspect port %d: %s" % (port, exc))

        if not cmdline:
            return ports.state.Error("Failed to read the command line of process %d." % pid)

        self.logger.debug("Port %d is held by pid %d: %s", port, pid, " ".join(cmdline))
        if is_our_binary(cmdline, binary_path) and find_port_flag(cmdline, port) is not None:
            parsed = parse_cmd(cmdline, port)
            return ports.state.InUseByUs(pid,
                                         arguments=parsed["arguments"],
                                         hosts_file=parsed["hosts_file"],
                                         message="Port is used by our process")
        return ports.state.InUseByOthers("Port is used by another program")

    def wait_for_state(self, port, binary_path, expected):
        """
        Polls the port until it reaches the expected state kind or the attempts run out.

        Args:
            port (int): Port to poll
            binary_path (str): Path of the proxy binary
            expected (str): State kind to wait for ("free", "in_use_by_us")

        Returns:
            :obj:`ports.state.PortState`: The reached state, or an Error on exhaustion
        """
        state = None
        for attempt in range(self.max_attempts):
            state = self.get_current_state(port, binary_path)
            if state.kind == expected:
                return state
            self.logger.debug("Port %d is %s, waiting for %s (%d/%d)", port, state, expected, attempt + 1, self.max_attempts)
            if attempt + 1 < self.max_attempts:
                time.sleep(self.interval)
        message = "Failed to reach state '%s' after %d attempts." % (expected, self.max_attempts)
        if state is not None and state.kind == ports.state.ERROR:
            message += " Last error: %s" % state.message
        return ports.state.Error(message)

    def reap(self):
        """
        Forgets launched processes that have already exited.
        """
        with self.lock:
            for pid, proc in list(self.launched.items()):
                if proc.poll() is not None:
                    del self.launched[pid]

    def start_process(self, port, binary_path, arguments, hosts_file=None, ip=None):
        """
        Launches the proxy detached from our own lifetime.

        Returns:
            :obj:`ports.state.Error` on failure, the Popen handle once the process is running
        """
        if not os.path.isfile(binary_path):
            return ports.state.Error("Executable not found: %s" % binary_path)
        if not os.access(binary_path, os.X_OK):
            return ports.state.Error("File is not executable: %s" % binary_path)

        command = [binary_path, "--port", str(port)]
        if ip:
            command += ["--ip", ip]
        if hosts_file:
            command += ["--hosts", hosts_file]
        try:
            command += shlex.split(arguments)
        except ValueError as exc:
            return ports.state.Error("Malformed arguments %r: %s" % (arguments, exc))

        log_path = os.devnull
        if self.output_directory:
            log_dir = os.path.join(self.output_directory, "logs")
            os.makedirs(log_dir, exist_ok=True)
            log_path = os.path.join(log_dir, "proxy.%d.log" % port)

        self.reap()
        self.logger.debug(" ".join(command))
        try:
            with open(log_path, "ab") as log:
                proc = subprocess.Popen(command, stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT, **detach_kwargs())
        except OSError as exc:
            return ports.state.Error("Failed to launch %s: %s" % (binary_path, exc))

        with self.lock:
            self.launched[proc.pid] = proc

        time.sleep(self.settle_delay)
        code = proc.poll()
        if code is not None:
            with self.lock:
                self.launched.pop(proc.pid, None)
            return ports.state.Error("Process exited right after launch (code %d)." % code)
        return proc

    def kill_process(self, pid):
        """
        Force-kills the given process and reaps it if we launched it.

        Returns:
            :obj:`ports.state.Error` on failure, None otherwise
        """
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            return ports.state.Error("Access denied killing process %d." % pid)

        with self.lock:
            proc = self.launched.pop(pid, None)
        if proc:
            try:
                proc.wait(timeout=max(self.interval, 1))
            except subprocess.TimeoutExpired:
                self.logger.warning("Process %d did not exit after kill", pid)
        return None

    def check(self, port, binary_path):
        """
        Reports the current state of the port.
        """
        return self.get_current_state(port, binary_path)

    def start(self, port, binary_path, arguments, hosts_file=None, ip=None):
        """
        Starts the proxy on a free port and waits until it is listening. A launched
        process that never gets there is killed before returning.

        Returns:
            :obj:`ports.state.PortState`: InUseByUs on success; otherwise the blocking state or an Error
        """
        state = self.get_current_state(port, binary_path)
        if isinstance(state, ports.state.InUseByUs):
            state.message = "Process already running"
            return state
        if not isinstance(state, ports.state.Free):
            return state

        proc = self.start_process(port, binary_path, arguments, hosts_file=hosts_file, ip=ip)
        if isinstance(proc, ports.state.Error):
            return proc

        state = self.wait_for_state(port, binary_path, ports.state.IN_USE_BY_US)
        if isinstance(state, ports.state.InUseByUs):
            state.message = "Process started"
            return state

        self.logger.debug("Killing pid %d, it never listened on port %d", proc.pid, port)
        error = self.kill_process(proc.pid)
        if error:
            state.message += " %s" % error.message
        return state

    def stop(self, port, binary_path):
        """
        Kills the proxy on the port and waits until the port is free.

        Returns:
            :obj:`ports.state.PortState`: Free on success; otherwise the blocking state or an Error
        """
        state = self.get_current_state(port, binary_path)
        if isinstance(state, ports.state.Free):
            return state
        if isinstance(state, ports.state.InUseByOthers):
            state.message = "Port is used by another program, cannot stop it"
            return state
        if isinstance(state, ports.state.Error):
            return state

        error = self.kill_process(state.pid)
        if error:
            return error

        state = self.wait_for_state(port, binary_path, ports.state.FREE)
        if isinstance(state, ports.state.Free):
            state.message = "Process stopped"
        return state
