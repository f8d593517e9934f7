"""
Probes links by running the curl binary through the lane's SOCKS5 proxy.
"""

import os
import shutil
import subprocess

from probers.prober import Prober, Outcome, SENTINEL, USER_AGENTS

HTTP_VERSION_FLAGS = {
    "http1-0": "--http1.0",
    "http1-1": "--http1.1",
    "http2": "--http2",
}

TLS_VERSION_FLAGS = {
    "tls1-0": "--tlsv1.0",
    "tls1-1": "--tlsv1.1",
    "tls1-2": "--tlsv1.2",
    "tls1-3": "--tlsv1.3",
}

# Extra seconds given to the curl process beyond its own --max-time
GRACE = 5


class CurlProber(Prober):
    """
    Defines the curl prober.
    """
    name = "curl"

    def __init__(self, args, logger=None, curl_path=None):
        Prober.__init__(self, args, logger=logger)
        self.curl_path = curl_path or shutil.which("curl") or "curl"

    def build_command(self, host, port, url):
        """
        Builds the curl command line for one probe.
        """
        command = [self.curl_path,
                   "--silent", "--show-error",
                   "--output", os.devnull,
                   "--write-out", "%{http_code}",
                   "--socks5-hostname", "%s:%d" % (host, port),
                   "--connect-timeout", str(self.args["connect_timeout"]),
                   "--max-time", str(self.args["max_timeout"]),
                   "--user-agent", USER_AGENTS[self.args["user_agent"]]]
        if self.args["http_method"] == "head":
            command.append("--head")
        if self.args["http_version"] in HTTP_VERSION_FLAGS:
            command.append(HTTP_VERSION_FLAGS[self.args["http_version"]])
        if self.args["tls_version"] in TLS_VERSION_FLAGS:
            command.append(TLS_VERSION_FLAGS[self.args["tls_version"]])
        command.append(url)
        return command

    def run(self, host, port, url):
        """
        Runs curl once and reads the status code it writes out.
        """
        command = self.build_command(host, port, url)
        if self.logger:
            self.logger.debug(" ".join(command))
        try:
            proc = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                  timeout=self.args["max_timeout"] + GRACE)
        except subprocess.TimeoutExpired:
            return Outcome(url, SENTINEL, "curl did not finish in time")
        except OSError as exc:
            return Outcome(url, SENTINEL, "Failed to run curl: %s" % exc)

        return self.parse_output(url, proc.returncode,
                                 proc.stdout.decode("utf-8", "ignore"),
                                 proc.stderr.decode("utf-8", "ignore"))

    @staticmethod
    def parse_output(url, returncode, stdout, stderr):
        """
        Converts curl's exit code and output into an outcome.
        """
        code = stdout.strip()[-3:]
        if returncode != 0:
            message = stderr.strip() or "curl exited with code %d" % returncode
            return Outcome(url, SENTINEL, "curl error: %s (code: %d)" % (message, returncode))
        if not code.isdigit() or code == SENTINEL:
            return Outcome(url, SENTINEL, "No HTTP response")
        return Outcome(url, code, "OK")
