"""
Lane-side client of the port lifecycle service.

Every call goes through the service's request/response boundary and is turned back
into a :obj:`ports.state.PortState`; nothing about a port is remembered between calls.
"""

import ports.state


class PortController():
    """
    Issues check/start/stop requests for one proxy binary.
    """
    def __init__(self, service, binary_path, hosts_file=None, ip=None):
        """
        Args:
            service: object with a handle(request) -> response method
            binary_path (str): path of the proxy binary
            hosts_file (str, None): hosts file passed to the proxy as --hosts on start
            ip (str, None): address the proxy is told to listen on with --ip
        """
        self.service = service
        self.binary_path = binary_path
        self.hosts_file = hosts_file
        self.ip = ip

    def request(self, action, port, **kwargs):
        """
        Sends one request and parses the response into a state.
        """
        body = {"action": action, "binary_path": self.binary_path, "port": port}
        body.update(kwargs)
        try:
            response = self.service.handle(body)
        except Exception as exc:
            return ports.state.Error("Port service request failed: %s" % exc)
        return ports.state.PortState.from_response(response)

    def check_state(self, port):
        return self.request("check", port)

    def start(self, port, arguments, use_hosts=False):
        """
        Starts the proxy with the given strategy arguments.

        Returns:
            :obj:`ports.state.PortState`: InUseByUs once the proxy listens; anything else is a failure
        """
        hosts_file = self.hosts_file if use_hosts else None
        return self.request("start", port, arguments=arguments, hosts_file=hosts_file, ip=self.ip)

    def stop(self, port):
        """
        Stops the proxy.

        Returns:
            :obj:`ports.state.PortState`: Free once the port is released; anything else is a failure
        """
        return self.request("stop", port)
