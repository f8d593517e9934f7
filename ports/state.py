"""
Port states reported by the port lifecycle service.

A state is recomputed from the operating system on every check and is never cached
between calls; other programs may grab or release a port at any time.
"""

FREE = "free"
IN_USE_BY_US = "in_use_by_us"
IN_USE_BY_OTHERS = "in_use_by_others"
ERROR = "error"


class PortState():
    """
    Superclass for the four states a port can be in.
    """
    kind = None

    def __init__(self, message=""):
        self.message = message

    @property
    def ok(self):
        """
        Whether this state could be determined.
        """
        return self.kind != ERROR

    def to_response(self):
        """
        Converts this state into the service's response dictionary.
        """
        return {"state": self.kind, "message": self.message, "ok": self.ok}

    @staticmethod
    def from_response(response):
        """
        Builds a state from a service response dictionary.

        Args:
            response (dict): Response of the port lifecycle service

        Returns:
            :obj:`PortState`: Parsed state. Malformed responses are reported as :obj:`Error`.
        """
        if not isinstance(response, dict):
            return Error("Malformed response from port service: %r" % (response,))
        kind = response.get("state")
        message = response.get("message", "")
        if kind == FREE:
            return Free(message)
        if kind == IN_USE_BY_US:
            return InUseByUs(response.get("pid"),
                             arguments=response.get("arguments", ""),
                             hosts_file=response.get("hosts_file", False),
                             message=message)
        if kind == IN_USE_BY_OTHERS:
            return InUseByOthers(message)
        if kind == ERROR:
            return Error(message or "Unknown port service error")
        return Error("Unknown port state %r" % (kind,))

    def __eq__(self, other):
        return isinstance(other, PortState) and self.kind == other.kind

    def __hash__(self):
        return hash(self.kind)

    def __str__(self):
        return self.kind

    def __repr__(self):
        return "%s(%r)" % (self.__class__.__name__, self.message)


class Free(PortState):
    """
    Nothing listens on the port.
    """
    kind = FREE


class InUseByUs(PortState):
    """
    Our proxy binary listens on the port with the expected --port flag.
    """
    kind = IN_USE_BY_US

    def __init__(self, pid, arguments="", hosts_file=False, message=""):
        PortState.__init__(self, message)
        self.pid = pid
        self.arguments = arguments
        self.hosts_file = hosts_file

    def to_response(self):
        response = PortState.to_response(self)
        response.update({"pid": self.pid, "arguments": self.arguments, "hosts_file": self.hosts_file})
        return response

    def __repr__(self):
        return "InUseByUs(pid=%r, arguments=%r)" % (self.pid, self.arguments)


class InUseByOthers(PortState):
    """
    Something other than our proxy listens on the port.
    """
    kind = IN_USE_BY_OTHERS


class Error(PortState):
    """
    The state of the port could not be determined.
    """
    kind = ERROR

    @property
    def reason(self):
        return self.message
