"""
Link prober superclass and shared probe plumbing.

A prober issues exactly one bounded request to a link through the local SOCKS5 proxy of
a lane and reports the HTTP status code it got back, or the "000" sentinel when no
response arrived at all.
"""

import argparse
import importlib
import inspect
import os
import sys
import urllib.parse

import utils

BASEPATH = os.path.dirname(os.path.abspath(__file__))

# Status code reported when no HTTP response was obtained
SENTINEL = "000"

MAX_LINK_LENGTH = 2000

USER_AGENTS = {
    1: "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36 Edg/136.0.0.0",
    2: "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:138.0) Gecko/20100101 Firefox/138.0",
    3: "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 (KHTML, like Gecko) SamsungBrowser/28.0 Chrome/130.0.0.0 Mobile Safari/537.36",
}

HTTP_METHODS = ("get", "head")
HTTP_VERSIONS = ("default", "http1-0", "http1-1", "http2")
TLS_VERSIONS = ("default", "tls1-0", "tls1-1", "tls1-2", "tls1-3")
TIMEOUT_RANGE = (1, 30)


class Outcome():
    """
    Result of probing one link.
    """
    def __init__(self, link, http_status=SENTINEL, message=""):
        self.link = link
        self.http_status = str(http_status)
        self.message = message

    @property
    def success(self):
        """
        Any HTTP answer, including 4xx and 5xx, means the proxy carried the request.
        """
        return self.http_status != SENTINEL

    def to_dict(self):
        return {"link": self.link, "http_status": self.http_status, "success": self.success, "message": self.message}

    def __str__(self):
        return "%s - %s - %s" % (self.http_status, self.link, self.message)

    def __repr__(self):
        return "Outcome(%r, %r)" % (self.link, self.http_status)


def ranged_int(low, high):
    """
    Returns an argparse type accepting integers within [low, high].
    """
    def parse(value):
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise argparse.ArgumentTypeError("%r is not an integer" % (value,))
        if not low <= number <= high:
            raise argparse.ArgumentTypeError("%d is outside %d-%d" % (number, low, high))
        return number
    return parse


def normalize_link(link):
    """
    Prefixes scheme-less links with https:// and validates them.

    Returns:
        str: normalized link, or None if the link cannot be requested
    """
    link = link.strip()
    if not link or len(link) > MAX_LINK_LENGTH:
        return None
    if not link.lower().startswith(("http://", "https://")):
        link = "https://" + link
    parsed = urllib.parse.urlparse(link)
    try:
        hostname = parsed.hostname
        parsed.port
    except ValueError:
        return None
    if not hostname:
        return None
    return link


def validate_params(args):
    """
    Checks probe parameters against their allowed ranges.

    Raises:
        :obj:`utils.ProbeConfigError`: if any parameter is invalid
    """
    low, high = TIMEOUT_RANGE
    for name in ("connect_timeout", "max_timeout"):
        value = args.get(name)
        if not isinstance(value, int) or not low <= value <= high:
            raise utils.ProbeConfigError("%s must be an integer from %d to %d, got %r" % (name, low, high, value))
    if str(args.get("http_method", "")).lower() not in HTTP_METHODS:
        raise utils.ProbeConfigError("Unsupported HTTP method %r" % args.get("http_method"))
    if args.get("http_version") not in HTTP_VERSIONS:
        raise utils.ProbeConfigError("Unsupported HTTP version %r" % args.get("http_version"))
    if args.get("tls_version") not in TLS_VERSIONS:
        raise utils.ProbeConfigError("Unsupported TLS version %r" % args.get("tls_version"))
    if args.get("user_agent") not in USER_AGENTS:
        raise utils.ProbeConfigError("Unknown user agent id %r" % args.get("user_agent"))


class Prober():
    """
    Defines superclass for link probers.
    """
    name = None
    # HTTP versions this prober can actually speak
    http_versions = HTTP_VERSIONS

    def __init__(self, args, logger=None):
        """
        Args:
            args (dict): probe parameters (see get_args)
            logger (:obj:`logging.Logger`, None): logger to log with
        """
        self.enabled = True
        self.args = args
        self.logger = logger
        if args is not None:
            validate_params(args)
            if args["http_version"] not in self.http_versions:
                raise utils.ProbeConfigError("The %s prober does not support %s" % (self.name, args["http_version"]))

    @staticmethod
    def get_args(command):
        """
        Parses the probe parameters shared by all probers.

        Returns:
            dict: parsed args
        """
        args, _ = Prober.get_arg_parser().parse_known_args(command)
        return vars(args)

    @staticmethod
    def get_arg_parser():
        """
        Defines the probe parameters shared by all probers.
        """
        # Do not add a help message; this allows us to collect the arguments from the driver
        parser = argparse.ArgumentParser(description='Link prober', allow_abbrev=False, add_help=False, prog="prober")
        probe_group = parser.add_argument_group('control aspects of link probing')
        probe_group.add_argument('--prober', action='store', choices=get_probers(), default="http", help="prober to check links with")
        probe_group.add_argument('--connect-timeout', action='store', type=ranged_int(*TIMEOUT_RANGE), default=5, help="seconds allowed to connect (1-30)")
        probe_group.add_argument('--max-timeout', action='store', type=ranged_int(*TIMEOUT_RANGE), default=10, help="seconds allowed for the whole request (1-30)")
        probe_group.add_argument('--http-method', action='store', choices=HTTP_METHODS, default="get", type=str.lower, help="HTTP method to probe with")
        probe_group.add_argument('--http-version', action='store', choices=HTTP_VERSIONS, default="default", help="HTTP version to probe with")
        probe_group.add_argument('--tls-version', action='store', choices=TLS_VERSIONS, default="default", help="minimum TLS version to probe with")
        probe_group.add_argument('--user-agent', action='store', type=int, choices=sorted(USER_AGENTS), default=1, help="User-Agent to send (1: Edge, 2: Firefox, 3: Samsung Internet)")
        return parser

    def probe(self, host, port, link):
        """
        Probes one link through the SOCKS5 proxy at host:port.

        Args:
            host (str): proxy address
            port (int): proxy port
            link (str): link to request

        Returns:
            :obj:`Outcome`: the outcome; transport failures never raise
        """
        url = normalize_link(link)
        if not url:
            return Outcome(link, SENTINEL, "Invalid link")
        return self.run(host, port, url)

    def run(self, host, port, url):
        """
        Issues the request. Implemented by each prober.
        """
        raise NotImplementedError


def get_probers():
    """
    Iterates over this directory to retrieve prober names.
    """
    probers = []
    for f in sorted(os.listdir(BASEPATH)):
        if f.endswith(".py") and f != "prober.py":
            probers.append(f[:-3])
    return probers


def import_prober(name):
    """
    Imports the given prober and returns its class.

    Args:
        name (str): prober to import (e.g. "http")
    """
    mod = "probers.%s" % name
    importlib.import_module(mod)

    def check_prober(obj):
        """
        Filters class members to ensure we get only enabled Prober subclasses
        """
        return inspect.isclass(obj) and \
                issubclass(obj, Prober) and \
                obj != Prober and \
                obj(None).enabled

    clsmembers = inspect.getmembers(sys.modules[mod], predicate=check_prober)

    assert clsmembers, "Could not find prober %s" % mod
    assert len(clsmembers) == 1, "Too many matching probers found for %s" % mod

    _, cls = clsmembers[0]
    return cls
