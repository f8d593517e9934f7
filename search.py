"""
Main driver for strategy search. Loads the configuration, strategies and links, and relies on
the coordinator (coordinator.py) to test every strategy through the proxy on the lane ports.
"""

import argparse
import json
import logging
import os
import subprocess as sp
import sys

import tqdm

import config
import coordinator
import executor
import library
import ports.controller
import ports.service
import ports.state
import probers.prober
import utils

# Grab the terminal size for printing
try:
    _, COLUMNS = sp.check_output(['stty', 'size'], stderr=sp.DEVNULL).decode().split()
# If pytest has capturing enabled or this is run without a tty, catch the exception
except (sp.CalledProcessError, OSError, ValueError):
    _, COLUMNS = 0, 0

SHOW_CHOICES = ("all", "hide") + executor.BUCKETS


def setup_logger(log_level):
    """
    Sets up the logger. This will log at the specified level to "search.log" and at debug level to "search_debug.log".
    Logs are stored in the trials/ directory under a run-specific folder.
    Example: trials/2020-01-01_01:00:00/logs/search.log

    Args:
        log_level (str): Log level to use in setting up the logger ("debug")
    """
    level = log_level.upper()
    assert level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], "Unknown log level %s" % level
    utils.CONSOLE_LOG_LEVEL = level.lower()

    # Setup needed folders
    search_log_dir = utils.setup_dirs(utils.RUN_DIRECTORY)

    search_log = os.path.join(search_log_dir, "search.log")
    search_debug_log = os.path.join(search_log_dir, "search_debug.log")

    formatter = logging.Formatter(fmt='%(asctime)s %(levelname)s:%(message)s', datefmt="%Y-%m-%d %H:%M:%S")

    logger = logging.getLogger("search_%s" % utils.RUN_DIRECTORY)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    setattr(logger, "search_log_dir", search_log_dir)

    # If this logger's handlers have already been set up, don't add them again
    if logger.handlers:
        return logger

    # Set log level of console
    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    # Add a DEBUG file handler to send all the debug output to a file
    debug_file_handler = logging.FileHandler(search_debug_log)
    debug_file_handler.setFormatter(formatter)
    debug_file_handler.setLevel(logging.DEBUG)
    logger.addHandler(debug_file_handler)

    # Add a file handler to send all the output to a file
    file_handler = logging.FileHandler(search_log)
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)
    return logger


def get_args(cmd):
    """
    Sets up argparse and collects arguments.

    Args:
        cmd (list): sys.argv or a list of args to parse

    Returns:
        namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(description='Search for proxy strategies that get links through DPI.\n\nsearch.py uses a pass-through argument system to pass the command line arguments through to the coordinator (coordinator.py) and the link prober (probers/). --help will collect all these arguments.', add_help=False, allow_abbrev=False, prog="search.py")

    # Add help message separately so we can collect the help messages of all of the other parsers
    parser.add_argument('-h', '--help', action='store_true', default=False, help='print this help message and exit')
    parser.add_argument('--config', action='store', default=config.DEFAULT_PATH, help="configuration file to load")

    input_group = parser.add_argument_group('control the strategies and links to test')
    input_group.add_argument('--strategies', action='append', default=[], help="file of newline separated strategies (repeatable)")
    input_group.add_argument('--strategy', action='append', default=[], help="strategy to test or to start on a main port (repeatable)")
    input_group.add_argument('--include-main', action='store_true', help="also test the strategies currently running on the main ports")
    input_group.add_argument('--links', action='append', default=[], help="file of newline separated links (repeatable)")
    input_group.add_argument('--link-group', action='append', default=[], help="add a default link group from the configuration (repeatable): %s" % ", ".join(sorted(library.LINK_GROUPS)))

    main_group = parser.add_argument_group('control the main proxy servers')
    main_group.add_argument('--status', action='store_true', help="print the state of every configured port and exit")
    main_group.add_argument('--start-main', action='store', type=int, help="start the proxy on this main port with --strategy and exit")
    main_group.add_argument('--stop-main', action='store', type=int, help="stop the proxy on this main port and exit")

    logging_group = parser.add_argument_group('control logging')
    logging_group.add_argument('--log', action='store', default="info", choices=("debug", "info", "warning", "critical", "error"), help="Sets the log level")
    logging_group.add_argument('--show', action='store', default="all", choices=SHOW_CHOICES, help="which trial results to print to the console; all trials are logged to file")
    logging_group.add_argument('--no-progress', action='store_true', help="disable the progress bar")

    if not cmd:
        parser.error("No arguments specified")

    args, _ = parser.parse_known_args(cmd)

    epilog = "See config.example.json for the configuration file format."
    # Override the help message to collect the pass through args
    if args.help:
        parser.print_help()
        print(epilog)
        print("=" * int(COLUMNS))
        print("\nsearch.py uses a pass-through argument system to coordinator.py and the link probers. These arguments are below.\n\n")
        coordinator.get_arg_parser().print_help()
        print("\n")
        probers.prober.Prober.get_arg_parser().print_help()
        raise SystemExit
    return args


def get_controller(cfg, cmd, logger):
    """
    Builds the port controller used by the driver and every lane.

    Args:
        cfg (dict): validated configuration
        cmd (list): command line, for the port handling options
        logger (:obj:`logging.Logger`): A logger to log with
    """
    run_args = coordinator.get_args(cmd)
    service = ports.service.LocalPortService(output_directory=run_args["output_directory"],
                                             max_attempts=run_args["state_attempts"],
                                             interval=run_args["state_interval"],
                                             logger=logger)
    return ports.controller.PortController(service, cfg["binary_path"], hosts_file=cfg["hosts_file"], ip=cfg["proxy_host"])


def get_prober(cmd, logger):
    """
    Imports and initializes the prober selected with --prober.

    Raises:
        :obj:`utils.ProbeConfigError`: if the probe parameters are not usable
    """
    probe_args = probers.prober.Prober.get_args(cmd)
    cls = probers.prober.import_prober(probe_args["prober"])
    return cls(probe_args, logger=logger)


def get_running_strategies(logger, controller, main_ports):
    """
    Collects the strategies currently running on the main ports.

    Args:
        logger (:obj:`logging.Logger`): A logger to log with
        controller (:obj:`ports.controller.PortController`): port controller
        main_ports (list): ports of the main proxy servers

    Returns:
        list: strategy arguments of every main port held by our proxy
    """
    strategies = []
    for port in main_ports:
        state = controller.check_state(port)
        if isinstance(state, ports.state.InUseByUs) and state.arguments:
            logger.debug("Main port %d runs: %s", port, state.arguments)
            strategies.append(state.arguments)
    return strategies


def load_strategies(logger, args, controller, cfg):
    """
    Loads strategies from the given files, the command line and optionally the main ports.

    Returns:
        list: de-duplicated strategies in the order they were given
    """
    text = []
    for path in args.strategies:
        if not os.path.isfile(path):
            raise utils.ConfigError("Strategy file %s does not exist" % path)
        with open(path, "r", encoding="utf-8") as fd:
            text.append(fd.read())
    text += args.strategy
    if args.include_main:
        text += get_running_strategies(logger, controller, cfg["main_ports"])
    return utils.clean_lines("\n".join(text), unique=True)


def load_links(args, cfg):
    """
    Loads links from the given files and link groups.

    Returns:
        list: cleaned links in the order they were given
    """
    links = []
    for path in args.links:
        if not os.path.isfile(path):
            raise utils.ConfigError("Link file %s does not exist" % path)
        links += utils.read_lines(path)
    for name in args.link_group:
        group = library.get_link_group(name, cfg["links"])
        if group is None:
            raise utils.ConfigError("Unknown link group %s (known groups: %s)" % (name, ", ".join(sorted(cfg["links"]))))
        links += group
    return links


def print_status(logger, controller, cfg):
    """
    Logs the state of every configured port.
    """
    for role, port_list in (("main", cfg["main_ports"]), ("test", cfg["test_ports"])):
        for port in port_list:
            state = controller.check_state(port)
            line = "%s port %d: %s" % (role, port, state)
            if isinstance(state, ports.state.InUseByUs):
                line += " (pid %s%s) %s" % (state.pid, ", hosts" if state.hosts_file else "", state.arguments)
            elif state.message:
                line += " (%s)" % state.message
            logger.info(line)


def start_main(logger, controller, cfg, port, strategies, use_hosts=False):
    """
    Starts the proxy on a main port.

    Returns:
        int: exit code
    """
    if port not in cfg["main_ports"]:
        logger.error("Port %d is not a configured main port.", port)
        return 1
    if len(strategies) != 1:
        logger.error("--start-main needs exactly one --strategy.")
        return 1
    state = controller.start(port, strategies[0], use_hosts=use_hosts)
    if isinstance(state, ports.state.InUseByUs):
        logger.info("Main port %d: %s (pid %s)", port, state.message, state.pid)
        return 0
    logger.error("Failed to start proxy on main port %d: %s", port, state.message)
    return 1


def stop_main(logger, controller, cfg, port):
    """
    Stops the proxy on a main port.

    Returns:
        int: exit code
    """
    if port not in cfg["main_ports"]:
        logger.error("Port %d is not a configured main port.", port)
        return 1
    state = controller.stop(port)
    if isinstance(state, ports.state.Free):
        logger.info("Main port %d: %s", port, state.message)
        return 0
    logger.error("Failed to stop proxy on main port %d: %s", port, state.message)
    return 1


def collect_results(results):
    """
    Collect final results of a run.

    Args:
        results (list): list of :obj:`executor.TrialResult`

    Returns:
        str: Formatted printout of every trial, best first
    """
    best = sorted(results, key=lambda result: result.percentage, reverse=True)
    return "\n\n".join(result.format() for result in best) + "\n"


def format_progress(progress):
    """
    Renders the bucket counters on one line.
    """
    counts = ", ".join("%s: %d" % (bucket, progress["buckets"][bucket]) for bucket in reversed(executor.BUCKETS))
    return "Processed %d/%d. %s" % (progress["processed"], progress["total"], counts)


def write_results(directory, results, progress):
    """
    Writes results.txt and results.json to the given directory.

    Args:
        directory (str): where to write the results
        results (list): list of :obj:`executor.TrialResult`
        progress (dict): final progress snapshot
    """
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, "results.txt"), "w", encoding="utf-8") as fd:
        fd.write(collect_results(results))
    with open(os.path.join(directory, "results.json"), "w", encoding="utf-8") as fd:
        json.dump({"progress": progress, "results": [result.to_dict() for result in results]}, fd, indent=2)


def run_search(logger, args, search, strategies, links):
    """
    Runs the coordinator with a progress bar and the display filter attached.

    Args:
        logger (:obj:`logging.Logger`): A logger to log with
        args (namespace): parsed driver arguments
        search (:obj:`coordinator.TaskCoordinator`): coordinator to run
        strategies (list): strategies to test
        links (list): links to probe

    Returns:
        dict: final progress snapshot
    """
    disable = args.no_progress or utils.get_console_log_level() == "debug"
    with tqdm.tqdm(total=len(strategies), unit="strategy", leave=False, disable=disable) as bar:
        def on_result(result, progress):
            if executor.in_range(result.percentage, args.show):
                bar.write(result.format())
            logger.debug("\n%s", result.format())
            bar.update(1)

        search.add_result_listener(on_result)
        return search.run(strategies, links)


def driver(cmd, controller=None, prober=None):
    """
    Main workflow driver. Parses flags and input data, and initiates the search.

    Args:
        cmd (list): sys.argv or a list of arguments
        controller (:obj:`ports.controller.PortController`, optional): port controller to use instead of the local service
        prober (:obj:`probers.prober.Prober`, optional): prober to use instead of the one named by --prober

    Returns:
        int: exit code
    """
    args = get_args(cmd)

    logger = setup_logger(args.log)
    logger.debug("Launching strategy search: %s", " ".join(cmd))

    cmd = cmd + ["--output-directory", utils.RUN_DIRECTORY]
    try:
        cfg = config.load_config(args.config)
    except utils.ConfigError as exc:
        logger.error("%s", exc)
        return 1

    if not controller:
        controller = get_controller(cfg, cmd, logger)

    if args.status:
        print_status(logger, controller, cfg)
        return 0
    if args.start_main is not None:
        run_args = coordinator.get_args(cmd)
        return start_main(logger, controller, cfg, args.start_main, utils.clean_lines("\n".join(args.strategy)), use_hosts=run_args["use_hosts"])
    if args.stop_main is not None:
        return stop_main(logger, controller, cfg, args.stop_main)

    try:
        strategies = load_strategies(logger, args, controller, cfg)
        links = load_links(args, cfg)
        if not prober:
            prober = get_prober(cmd, logger)
        search = coordinator.TaskCoordinator(cmd, logger, cfg, controller=controller, prober=prober)
    except (utils.ConfigError, utils.ProbeConfigError, OSError) as exc:
        logger.error("%s", exc)
        return 1

    if not strategies:
        logger.error("No strategies to test.")
        return 1
    if not links:
        logger.error("No links to probe.")
        return 1

    logger.info("Logging results to %s", logger.search_log_dir)
    progress = run_search(logger, args, search, strategies, links)

    logger.info(format_progress(progress))
    write_results(utils.RUN_DIRECTORY, search.results, progress)
    logger.info("Results written to %s", os.path.join(utils.RUN_DIRECTORY, "results.txt"))
    return 0


if __name__ == "__main__":
    sys.exit(driver(sys.argv[1:]))
