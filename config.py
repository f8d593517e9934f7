"""
Loads and validates the JSON configuration file.

Example:

    {
        "binary_path": "/opt/byedpi/ciadpi",
        "hosts_file": "/opt/byedpi/hosts.txt",
        "proxy_host": "127.0.0.1",
        "main_ports": [1080, 1081],
        "test_ports": [10000, 10001, 10002, 10003],
        "links": {"youtube": ["https://www.youtube.com/"]}
    }
"""

import copy
import ipaddress
import json
import os

import library
import ports.service
import utils

DEFAULT_PATH = "config.json"
DEFAULT_PROXY_HOST = "127.0.0.1"


def load_config(path=DEFAULT_PATH):
    """
    Reads and validates a configuration file.

    Args:
        path (str): path to the JSON configuration file

    Returns:
        dict: validated configuration, with defaults filled in and link groups merged
            over the built-in ones

    Raises:
        :obj:`utils.ConfigError`: if the file is missing, unreadable or invalid
    """
    if not os.path.exists(path):
        raise utils.ConfigError("Configuration file %s does not exist" % path)
    try:
        with open(path, "r", encoding="utf-8") as fd:
            data = json.load(fd)
    except (OSError, ValueError) as exc:
        raise utils.ConfigError("Could not read configuration file %s: %s" % (path, exc))

    # Relative paths in the file are relative to the file itself
    return validate_config(data, basedir=os.path.dirname(os.path.abspath(path)))


def validate_config(data, basedir=None):
    """
    Validates a configuration dictionary.

    Args:
        data (dict): parsed configuration
        basedir (str, optional): directory relative paths are resolved against

    Returns:
        dict: validated copy of the configuration
    """
    if not isinstance(data, dict):
        raise utils.ConfigError("Configuration must be a JSON object")

    config = {}
    binary_path = data.get("binary_path")
    if not binary_path or not isinstance(binary_path, str):
        raise utils.ConfigError("binary_path is required")
    config["binary_path"] = resolve_path(binary_path, basedir)

    hosts_file = data.get("hosts_file")
    if hosts_file is not None and not isinstance(hosts_file, str):
        raise utils.ConfigError("hosts_file must be a path")
    config["hosts_file"] = resolve_path(hosts_file, basedir) if hosts_file else None

    proxy_host = data.get("proxy_host", DEFAULT_PROXY_HOST)
    try:
        ipaddress.ip_address(proxy_host)
    except ValueError:
        raise utils.ConfigError("proxy_host %r is not a valid IP address" % (proxy_host,))
    config["proxy_host"] = proxy_host

    config["test_ports"] = validate_ports(data.get("test_ports"), "test_ports")
    if not config["test_ports"]:
        raise utils.ConfigError("test_ports must list at least one port")
    config["main_ports"] = validate_ports(data.get("main_ports", []), "main_ports")

    overlap = set(config["test_ports"]) & set(config["main_ports"])
    if overlap:
        raise utils.ConfigError("Ports used as both test and main ports: %s" % ", ".join(str(p) for p in sorted(overlap)))

    config["links"] = validate_links(data.get("links", {}))
    return config


def validate_ports(ports_list, name):
    """
    Checks that a list holds unique, valid TCP ports.
    """
    if not isinstance(ports_list, list):
        raise utils.ConfigError("%s must be a list of ports" % name)
    seen = set()
    for port in ports_list:
        if not ports.service.is_valid_port(port):
            raise utils.ConfigError("%s: %r is not a valid port" % (name, port))
        if port in seen:
            raise utils.ConfigError("%s: port %d is listed twice" % (name, port))
        seen.add(port)
    return list(ports_list)


def validate_links(groups):
    """
    Merges configured link groups over the built-in ones.
    """
    if not isinstance(groups, dict):
        raise utils.ConfigError("links must map group names to lists of links")
    merged = copy.deepcopy(library.LINK_GROUPS)
    for name, links in groups.items():
        if not isinstance(links, list) or not all(isinstance(link, str) for link in links):
            raise utils.ConfigError("Link group %s must be a list of links" % name)
        merged[name] = utils.clean_lines("\n".join(links))
    return merged


def resolve_path(path, basedir):
    path = os.path.expanduser(path)
    if basedir and not os.path.isabs(path):
        path = os.path.join(basedir, path)
    return path
