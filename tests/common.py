import sys
import threading
import time
# Include the root of the project
sys.path.append("..")

import ports.state
import probers.prober


class FakePortService():
    """
    In-memory port lifecycle service that tracks the state of every port and lets tests
    inject failures. Speaks the same request/response dictionaries as the local service.
    """
    def __init__(self, others=None, check_errors=None, fail_start=None, fail_stop=None, start_delay=0):
        """
        Args:
            others (set): ports held by another program
            check_errors (dict): port -> number of checks that report an Error
            fail_start (set): strategies that never come up
            fail_stop (dict): strategy -> number of stops that fail while it runs
            start_delay (float): seconds a start takes
        """
        self.lock = threading.Lock()
        self.running = {}
        self.others = set(others or [])
        self.check_errors = dict(check_errors or {})
        self.fail_start = set(fail_start or [])
        self.fail_stop = dict(fail_stop or {})
        self.start_delay = start_delay
        self.history = []
        self.violations = []
        self.next_pid = 1000

    def state(self, port):
        """
        Returns the state a port is currently in.
        """
        if port in self.others:
            return ports.state.InUseByOthers("Port is used by another program")
        if port in self.running:
            pid, arguments = self.running[port]
            return ports.state.InUseByUs(pid, arguments=arguments, message="Port is used by our process")
        return ports.state.Free("Port is free")

    def handle(self, request):
        action = request["action"]
        port = request["port"]
        with self.lock:
            self.history.append((action, port, request.get("arguments")))
            if action == "check":
                state = self.check(port)
            elif action == "start":
                state = self.start(port, request.get("arguments") or "")
            else:
                state = self.stop(port)
        if action == "start" and self.start_delay:
            time.sleep(self.start_delay)
        response = {"action": action, "binary_path": request["binary_path"], "port": port}
        response.update(state.to_response())
        return response

    def check(self, port):
        if self.check_errors.get(port):
            self.check_errors[port] -= 1
            return ports.state.Error("Failed to inspect port %d" % port)
        return self.state(port)

    def start(self, port, arguments):
        state = self.state(port)
        if not isinstance(state, ports.state.Free):
            self.violations.append(("start on busy port", port, arguments))
            return state
        if arguments in self.fail_start:
            return ports.state.Error("Process exited right after launch (code 1).")
        self.next_pid += 1
        self.running[port] = (self.next_pid, arguments)
        return ports.state.InUseByUs(self.next_pid, arguments=arguments, message="Process started")

    def stop(self, port):
        state = self.state(port)
        if not isinstance(state, ports.state.InUseByUs):
            return state
        if self.fail_stop.get(state.arguments):
            self.fail_stop[state.arguments] -= 1
            return ports.state.Error("Failed to reach state 'free' after 10 attempts.")
        del self.running[port]
        return ports.state.Free("Process stopped")


class FakeProber(probers.prober.Prober):
    """
    Prober that answers from a script instead of the network.
    """
    name = "fake"

    def __init__(self, codes=None, default="200", service=None):
        """
        Args:
            codes (dict): link -> status code, or strategy -> {link -> status code}
            default (str): status code of every other link
            service (:obj:`FakePortService`): if given, probes through a port not held by our proxy fail
        """
        probers.prober.Prober.__init__(self, None)
        self.codes = codes or {}
        self.default = default
        self.service = service
        self.lock = threading.Lock()
        self.calls = []

    def run(self, host, port, url):
        strategy = None
        if self.service:
            with self.service.lock:
                state = self.service.state(port)
            if not isinstance(state, ports.state.InUseByUs):
                self.service.violations.append(("probe without proxy", port, url))
                return probers.prober.Outcome(url, "000", "Connection refused")
            strategy = state.arguments
        with self.lock:
            self.calls.append((port, url))
        codes = self.codes.get(strategy, self.codes)
        code = codes.get(url, self.default)
        if isinstance(code, Exception):
            raise code
        return probers.prober.Outcome(url, code, "OK" if code != "000" else "Connection timed out")


def make_links(count):
    """
    Returns count distinct links.
    """
    return ["https://site%d.example/" % i for i in range(count)]
