"""
Probes links with requests through the lane's SOCKS5 proxy.
"""

import ssl
import time

import requests
import urllib3
from requests.adapters import HTTPAdapter

from probers.prober import Prober, Outcome, SENTINEL, USER_AGENTS

# Hostname resolution happens on the proxy side (socks5h), like curl's --socks5-hostname
PROXY_SCHEME = "socks5h"

TLS_MINIMUM = {
    "tls1-0": ssl.TLSVersion.TLSv1,
    "tls1-1": ssl.TLSVersion.TLSv1_1,
    "tls1-2": ssl.TLSVersion.TLSv1_2,
    "tls1-3": ssl.TLSVersion.TLSv1_3,
}

CHUNK_SIZE = 16384


class TLSAdapter(HTTPAdapter):
    """
    Transport adapter that pins the minimum TLS version, including for SOCKS proxied pools.
    """
    def __init__(self, tls_version="default", **kwargs):
        self.ssl_context = None
        if tls_version in TLS_MINIMUM:
            self.ssl_context = ssl.create_default_context()
            self.ssl_context.minimum_version = TLS_MINIMUM[tls_version]
        HTTPAdapter.__init__(self, **kwargs)

    def init_poolmanager(self, *args, **kwargs):
        if self.ssl_context:
            kwargs["ssl_context"] = self.ssl_context
        return HTTPAdapter.init_poolmanager(self, *args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        if self.ssl_context:
            proxy_kwargs["ssl_context"] = self.ssl_context
        return HTTPAdapter.proxy_manager_for(self, proxy, **proxy_kwargs)


class HTTPProber(Prober):
    """
    Defines the requests based prober.
    """
    name = "http"
    # requests only speaks HTTP/1.1
    http_versions = ("default", "http1-1")

    def __init__(self, args, logger=None):
        Prober.__init__(self, args, logger=logger)

    def get_session(self):
        """
        Builds a fresh session so no connection is reused between trials.
        """
        session = requests.Session()
        adapter = TLSAdapter(tls_version=self.args["tls_version"], max_retries=0)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.headers["User-Agent"] = USER_AGENTS[self.args["user_agent"]]
        return session

    def run(self, host, port, url):
        """
        Requests the url once, without following redirects.
        """
        proxy = "%s://%s:%d" % (PROXY_SCHEME, host, port)
        proxies = {"http": proxy, "https": proxy}
        connect_timeout = self.args["connect_timeout"]
        max_timeout = self.args["max_timeout"]
        deadline = time.monotonic() + max_timeout
        method = self.args["http_method"].upper()

        try:
            with self.get_session() as session:
                with session.request(method, url, proxies=proxies, allow_redirects=False, stream=True,
                                     timeout=(connect_timeout, max_timeout)) as res:
                    # Read the body under the overall deadline, as curl's --max-time would
                    if method == "GET":
                        for _ in res.iter_content(chunk_size=CHUNK_SIZE):
                            if time.monotonic() > deadline:
                                return Outcome(url, SENTINEL, "Operation timed out after %d seconds" % max_timeout)
                    return Outcome(url, res.status_code, "OK")
        except requests.exceptions.ConnectTimeout as exc:
            self.debug("Connect timeout for %s: %s", url, exc)
            return Outcome(url, SENTINEL, "Connection timed out")
        except requests.exceptions.SSLError as exc:
            self.debug("TLS failure for %s: %s", url, exc)
            return Outcome(url, SENTINEL, "TLS error: %s" % exc)
        except (requests.exceptions.ConnectionError, ConnectionResetError) as exc:
            self.debug("Connection failure for %s: %s", url, exc)
            return Outcome(url, SENTINEL, "Connection error: %s" % exc)
        except (requests.exceptions.Timeout, urllib3.exceptions.ReadTimeoutError) as exc:
            self.debug("Timeout for %s: %s", url, exc)
            return Outcome(url, SENTINEL, "Operation timed out")
        except requests.exceptions.RequestException as exc:
            self.debug("Request failure for %s: %s", url, exc)
            return Outcome(url, SENTINEL, "Request error: %s" % exc)

    def debug(self, msg, *args):
        if self.logger:
            self.logger.debug(msg, *args)
