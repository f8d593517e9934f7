import ssl
import subprocess
import sys
import pytest
# Include the root of the project
sys.path.append("..")

import requests

import probers.curl
import probers.http
import probers.prober
import utils


def get_params(**kwargs):
    """
    Returns probe parameters with the command line defaults.
    """
    params = probers.prober.Prober.get_args([])
    params.update(kwargs)
    return params


def test_get_args():
    """
    Tests probe parameter defaults and range checks.
    """
    params = probers.prober.Prober.get_args(["--threads", "4"])
    assert params == {
        "prober": "http",
        "connect_timeout": 5,
        "max_timeout": 10,
        "http_method": "get",
        "http_version": "default",
        "tls_version": "default",
        "user_agent": 1,
    }
    params = probers.prober.Prober.get_args(["--http-method", "HEAD", "--user-agent", "3", "--prober", "curl"])
    assert params["http_method"] == "head"
    assert params["user_agent"] == 3
    assert params["prober"] == "curl"
    for bad in (["--connect-timeout", "0"], ["--max-timeout", "31"], ["--user-agent", "4"], ["--tls-version", "ssl3"]):
        with pytest.raises(SystemExit):
            probers.prober.Prober.get_args(bad)


@pytest.mark.parametrize("field,value", [
    ("connect_timeout", 0),
    ("max_timeout", 31),
    ("max_timeout", "10"),
    ("http_method", "post"),
    ("http_version", "http3"),
    ("tls_version", "ssl3"),
    ("user_agent", 4),
])
def test_validate_params(field, value):
    """
    Tests that out of range parameters are rejected.
    """
    with pytest.raises(utils.ProbeConfigError):
        probers.prober.validate_params(get_params(**{field: value}))


def test_validate_params_is_value_error():
    with pytest.raises(ValueError):
        probers.prober.Prober(get_params(user_agent=0))


@pytest.mark.parametrize("link,expected", [
    ("example.com", "https://example.com"),
    ("  www.youtube.com/watch?v=1 ", "https://www.youtube.com/watch?v=1"),
    ("http://example.com/a", "http://example.com/a"),
    ("HTTPS://Example.com", "HTTPS://Example.com"),
    ("", None),
    ("https://", None),
    ("https://example.com:99999/", None),
    ("https://example.com/" + "a" * 2000, None),
])
def test_normalize_link(link, expected):
    assert probers.prober.normalize_link(link) == expected


def test_get_probers():
    """
    Tests prober discovery.
    """
    assert probers.prober.get_probers() == ["curl", "http"]
    assert probers.prober.import_prober("http") == probers.http.HTTPProber
    assert probers.prober.import_prober("curl") == probers.curl.CurlProber


class ScriptedProber(probers.prober.Prober):
    name = "scripted"

    def __init__(self, args):
        probers.prober.Prober.__init__(self, args)
        self.urls = []

    def run(self, host, port, url):
        self.urls.append(url)
        return probers.prober.Outcome(url, 204, "OK")


def test_probe_normalizes(logger):
    """
    Tests that probe() normalizes links and never sends invalid ones.
    """
    prober = ScriptedProber(get_params())
    outcome = prober.probe("127.0.0.1", 1080, "example.com/x")
    assert outcome.success
    assert outcome.http_status == "204"
    assert prober.urls == ["https://example.com/x"]

    outcome = prober.probe("127.0.0.1", 1080, "https://")
    assert not outcome.success
    assert outcome.http_status == "000"
    assert outcome.message == "Invalid link"
    assert len(prober.urls) == 1


def test_outcome():
    outcome = probers.prober.Outcome("https://a.example/", 503, "OK")
    # Server errors still mean the proxy carried the request
    assert outcome.success
    assert str(outcome) == "503 - https://a.example/ - OK"
    assert not probers.prober.Outcome("https://a.example/").success
    assert outcome.to_dict() == {"link": "https://a.example/", "http_status": "503", "success": True, "message": "OK"}


def test_curl_command(logger):
    """
    Tests the curl command line for each option.
    """
    prober = probers.curl.CurlProber(get_params(), logger=logger, curl_path="curl")
    command = prober.build_command("127.0.0.1", 1080, "https://example.com/")
    assert command[0] == "curl"
    assert command[-1] == "https://example.com/"
    assert "--socks5-hostname" in command
    assert command[command.index("--socks5-hostname") + 1] == "127.0.0.1:1080"
    assert command[command.index("--connect-timeout") + 1] == "5"
    assert command[command.index("--max-time") + 1] == "10"
    assert command[command.index("--user-agent") + 1] == probers.prober.USER_AGENTS[1]
    assert command[command.index("--write-out") + 1] == "%{http_code}"
    assert "--head" not in command
    assert "--location" not in command
    assert not [arg for arg in command if arg.startswith(("--http1", "--http2", "--tlsv"))]

    prober = probers.curl.CurlProber(get_params(http_method="head", http_version="http1-0", tls_version="tls1-3", user_agent=2), curl_path="curl")
    command = prober.build_command("10.0.0.1", 2000, "http://example.com/")
    assert "--head" in command
    assert "--http1.0" in command
    assert "--tlsv1.3" in command
    assert command[command.index("--user-agent") + 1] == probers.prober.USER_AGENTS[2]


@pytest.mark.parametrize("returncode,stdout,stderr,status,message", [
    (0, "200", "", "200", "OK"),
    (0, "404\n", "", "404", "OK"),
    (0, "000", "", "000", "No HTTP response"),
    (0, "", "", "000", "No HTTP response"),
    (28, "000", "curl: (28) Operation timed out after 10001 milliseconds", "000", "curl error: curl: (28) Operation timed out after 10001 milliseconds (code: 28)"),
    (7, "", "", "000", "curl error: curl exited with code 7 (code: 7)"),
])
def test_curl_parse_output(returncode, stdout, stderr, status, message):
    """
    Tests reading curl's exit code and written out status.
    """
    outcome = probers.curl.CurlProber.parse_output("https://a.example/", returncode, stdout, stderr)
    assert outcome.http_status == status
    assert outcome.message == message


def test_curl_run(logger, monkeypatch):
    """
    Tests running curl and handling a curl that hangs.
    """
    calls = []

    def fake_run(command, **kwargs):
        calls.append((command, kwargs))
        return subprocess.CompletedProcess(command, 0, stdout=b"301", stderr=b"")

    monkeypatch.setattr(probers.curl.subprocess, "run", fake_run)
    prober = probers.curl.CurlProber(get_params(max_timeout=7), logger=logger, curl_path="curl")
    outcome = prober.probe("127.0.0.1", 1080, "example.com")
    assert outcome.http_status == "301"
    assert outcome.success
    assert calls[0][0][-1] == "https://example.com"
    assert calls[0][1]["timeout"] == 7 + probers.curl.GRACE

    def hung_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(probers.curl.subprocess, "run", hung_run)
    outcome = prober.probe("127.0.0.1", 1080, "example.com")
    assert outcome.http_status == "000"

    def missing_run(command, **kwargs):
        raise FileNotFoundError("curl")

    monkeypatch.setattr(probers.curl.subprocess, "run", missing_run)
    outcome = prober.probe("127.0.0.1", 1080, "example.com")
    assert outcome.http_status == "000"
    assert "Failed to run curl" in outcome.message


def test_http_rejects_unsupported_version():
    """
    Tests that the requests prober refuses HTTP versions it cannot speak.
    """
    with pytest.raises(utils.ProbeConfigError):
        probers.http.HTTPProber(get_params(http_version="http2"))
    assert probers.http.HTTPProber(get_params(http_version="http1-1"))


def test_tls_adapter():
    """
    Tests that the adapter pins the minimum TLS version.
    """
    adapter = probers.http.TLSAdapter(tls_version="tls1-2")
    assert adapter.ssl_context.minimum_version == ssl.TLSVersion.TLSv1_2
    assert probers.http.TLSAdapter().ssl_context is None


class FakeResponse():
    def __init__(self, status_code, chunks=None):
        self.status_code = status_code
        self.chunks = chunks or [b"body"]

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            yield chunk

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


def test_http_run(logger, monkeypatch):
    """
    Tests the request issued through the SOCKS proxy.
    """
    calls = []

    def fake_request(session, method, url, **kwargs):
        calls.append((session, method, url, kwargs))
        return FakeResponse(302)

    monkeypatch.setattr(requests.Session, "request", fake_request)
    prober = probers.http.HTTPProber(get_params(connect_timeout=3, max_timeout=9, user_agent=3), logger=logger)
    outcome = prober.probe("127.0.0.1", 1080, "example.com")

    assert outcome.http_status == "302"
    assert outcome.success
    session, method, url, kwargs = calls[0]
    assert method == "GET"
    assert url == "https://example.com"
    assert kwargs["proxies"] == {"http": "socks5h://127.0.0.1:1080", "https": "socks5h://127.0.0.1:1080"}
    assert kwargs["allow_redirects"] is False
    assert kwargs["timeout"] == (3, 9)
    assert session.headers["User-Agent"] == probers.prober.USER_AGENTS[3]

    prober = probers.http.HTTPProber(get_params(http_method="head"), logger=logger)
    prober.probe("127.0.0.1", 1080, "example.com")
    assert calls[1][1] == "HEAD"


@pytest.mark.parametrize("exc,message", [
    (requests.exceptions.ConnectTimeout("timed out"), "Connection timed out"),
    (requests.exceptions.SSLError("handshake failure"), "TLS error"),
    (requests.exceptions.ConnectionError("refused"), "Connection error"),
    (requests.exceptions.ReadTimeout("read timed out"), "Operation timed out"),
    (requests.exceptions.InvalidURL("bad url"), "Request error"),
])
def test_http_failures(logger, monkeypatch, exc, message):
    """
    Tests that transport failures become "000" outcomes.
    """
    def fake_request(session, method, url, **kwargs):
        raise exc

    monkeypatch.setattr(requests.Session, "request", fake_request)
    prober = probers.http.HTTPProber(get_params(), logger=logger)
    outcome = prober.probe("127.0.0.1", 1080, "https://example.com/")
    assert outcome.http_status == "000"
    assert not outcome.success
    assert outcome.message.startswith(message)


def test_http_body_deadline(logger, monkeypatch):
    """
    Tests that a body still streaming past the overall timeout counts as a failure.
    """
    now = [100.0]

    def fake_monotonic():
        now[0] += 5
        return now[0]

    monkeypatch.setattr(probers.http.time, "monotonic", fake_monotonic)
    monkeypatch.setattr(requests.Session, "request", lambda session, method, url, **kwargs: FakeResponse(200, [b"a", b"b", b"c"]))
    prober = probers.http.HTTPProber(get_params(max_timeout=10), logger=logger)
    outcome = prober.probe("127.0.0.1", 1080, "https://example.com/")
    assert outcome.http_status == "000"
    assert "timed out" in outcome.message
