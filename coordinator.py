"""
The Task Coordinator fans a strategy list out over lanes, each lane owning one proxy port,
and aggregates the trial results as they stream back.
"""

import argparse
import copy
import threading
import time

import executor
import ports.controller
import ports.service
import probers.prober
import utils


class RunState():
    """
    Counters of one run. Only mutated under the coordinator's lock.
    """
    def __init__(self, total=0, lanes=0):
        self.stopped = False
        self.total = total
        self.processed = 0
        self.lanes = lanes
        self.lanes_remaining = lanes
        self.buckets = dict.fromkeys(executor.BUCKETS, 0)

    def snapshot(self):
        """
        Returns a copy of the counters that is safe to hand out.
        """
        return {
            "stopped": self.stopped,
            "total": self.total,
            "processed": self.processed,
            "lanes": self.lanes,
            "lanes_remaining": self.lanes_remaining,
            "buckets": copy.copy(self.buckets),
        }


def split_strategies(strategies, count):
    """
    Splits strategies into count contiguous chunks whose sizes differ by at most one.

    Args:
        strategies (list): strategies in submission order
        count (int): number of lanes

    Returns:
        list: list of non-empty chunks, in order
    """
    if count <= 0 or not strategies:
        return []
    size, extra = divmod(len(strategies), count)
    groups = []
    start = 0
    for i in range(count):
        end = start + size + (1 if i < extra else 0)
        groups.append(strategies[start:end])
        start = end
    return [group for group in groups if group]


class TaskCoordinator():
    def __init__(self, command, logger, config, controller=None, prober=None):
        """
        Initialize the coordinator for a run.

        Args:
            command (list): sys.argv or list of arguments
            logger (:obj:`logging.Logger`): logger passed in from the main driver to log from
            config (dict): validated configuration (see config.load_config)
            controller (:obj:`ports.controller.PortController`, None): port lifecycle client; built from the config if not given
            prober (:obj:`probers.prober.Prober`, None): link prober; imported from --prober if not given
        """
        self.args = get_args(command)
        self.logger = logger
        self.config = config
        self.ports = list(config["test_ports"])
        self.proxy_host = config.get("proxy_host", "127.0.0.1")
        self.output_directory = self.args.get("output_directory")

        if not controller:
            service = ports.service.LocalPortService(output_directory=self.output_directory,
                                                     max_attempts=self.args["state_attempts"],
                                                     interval=self.args["state_interval"],
                                                     logger=logger)
            controller = ports.controller.PortController(service, config["binary_path"], hosts_file=config.get("hosts_file"), ip=self.proxy_host)
        self.controller = controller

        if not prober:
            probe_args = probers.prober.Prober.get_args(command)
            prober_cls = probers.prober.import_prober(probe_args["prober"])
            prober = prober_cls(probe_args, logger=logger)
        self.prober = prober

        # Used to tell the loggers of different runs apart
        self.run_id = utils.get_id()
        self.lock = threading.Lock()
        self.stop_event = threading.Event()
        self.state = RunState()
        self.results = []
        self.lanes = []
        self.result_listeners = []
        self.progress_listeners = []

    def add_result_listener(self, callback):
        """
        Registers callback(result, progress), called once per finished trial.
        """
        self.result_listeners.append(callback)

    def add_progress_listener(self, callback):
        """
        Registers callback(progress), called on every counter change.
        """
        self.progress_listeners.append(callback)

    @property
    def running(self):
        return any(lane.is_alive() for lane in self.lanes)

    @property
    def stopped(self):
        return self.stop_event.is_set()

    def start(self, strategies, links, thread_count=None):
        """
        Partitions the strategies into lanes and launches them. Returns immediately.

        Args:
            strategies (list): strategies to test, in order
            links (list): links to probe for every strategy
            thread_count (int, None): requested lanes; defaults to --threads

        Returns:
            :obj:`TaskCoordinator`: self, as the run handle
        """
        if self.running:
            raise RuntimeError("A run is already in progress.")
        strategies = list(strategies)
        links = list(links)

        threads = thread_count or self.args["threads"]
        lane_count = min(threads, len(strategies))
        if lane_count > len(self.ports):
            self.logger.warning("Only %d lane ports are configured, running %d lanes instead of %d.", len(self.ports), len(self.ports), lane_count)
            lane_count = len(self.ports)
        groups = split_strategies(strategies, lane_count)

        with self.lock:
            self.stop_event.clear()
            self.results = []
            self.state = RunState(total=len(strategies), lanes=len(groups))

        self.logger.info("Testing %d strategies against %d links on %d lanes.", len(strategies), len(links), len(groups))
        self.lanes = []
        for lane, group in enumerate(groups, start=1):
            thread = threading.Thread(target=self.worker, args=(lane, group, links), name="lane-%d" % lane, daemon=True)
            self.lanes.append(thread)
        for thread in self.lanes:
            thread.start()
        return self

    def wait(self, timeout=None):
        """
        Blocks until all lanes have returned, or the timeout passes.

        Returns:
            bool: whether the run is done
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self.lanes:
            if deadline is None:
                thread.join()
            else:
                thread.join(max(deadline - time.monotonic(), 0))
        return not self.running

    def run(self, strategies, links, thread_count=None):
        """
        Runs all strategies and blocks until done. Ctrl+C stops the run cooperatively.

        Returns:
            dict: final progress snapshot; "stopped" tells whether the run was cut short
        """
        self.start(strategies, links, thread_count=thread_count)
        try:
            # Join with a timeout so the main thread stays responsive to Ctrl+C
            while not self.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            self.logger.info("User shutdown requested, waiting for lanes to release their ports.")
            self.stop()
            self.wait()
        progress = self.progress()
        self.logger.info("Strategy testing %s: %d/%d processed.", "stopped" if progress["stopped"] else "finished",
                         progress["processed"], progress["total"])
        return progress

    def stop(self):
        """
        Asks every lane to stop before its next strategy. Trials in flight complete,
        including stopping their proxy. Does nothing once every strategy is processed.
        """
        with self.lock:
            if not self.state.lanes_remaining or self.state.processed >= self.state.total:
                self.logger.debug("No strategies left to stop.")
                return
            self.stop_event.set()
            self.state.stopped = True
            progress = self.state.snapshot()
        self.logger.info("Stopping strategy testing...")
        self.notify_progress(progress)

    def progress(self):
        with self.lock:
            return self.state.snapshot()

    def worker(self, lane, strategies, links):
        """
        Lane runner: tests its strategies one at a time, in order.

        Args:
            lane (int): lane number, starting at 1
            strategies (list): this lane's strategies
            links (list): links to probe
        """
        port = self.ports[lane - 1]
        try:
            if self.output_directory:
                with utils.Logger(self.output_directory, __name__ + self.run_id, "lane", str(lane), log_level=utils.get_console_log_level()) as logger:
                    self.run_lane(lane, port, strategies, links, logger)
            else:
                self.run_lane(lane, port, strategies, links, self.logger)
        finally:
            with self.lock:
                self.state.lanes_remaining -= 1
                progress = self.state.snapshot()
            self.notify_progress(progress)

    def run_lane(self, lane, port, strategies, links, logger):
        for strategy in strategies:
            # Only checked between trials, so a started proxy is always stopped first
            if self.stop_event.is_set():
                logger.debug("Stop requested, lane %d exiting.", lane)
                break
            trial = executor.StrategyExecutor(lane, port, strategy, links, self.controller, self.prober, logger,
                                              proxy_host=self.proxy_host,
                                              use_hosts=self.args["use_hosts"],
                                              attempt_delay=self.args["attempt_delay"])
            self.record(trial.execute())

    def record(self, result):
        """
        Aggregates one trial result. Counter updates are atomic per result; listeners
        get the snapshot taken with them, outside the lock.
        """
        with self.lock:
            self.results.append(result)
            self.state.processed += 1
            if result.bucket:
                self.state.buckets[result.bucket] += 1
            progress = self.state.snapshot()
        for callback in self.result_listeners:
            try:
                callback(result, progress)
            except Exception:
                self.logger.exception("Result listener failed")
        self.notify_progress(progress)

    def notify_progress(self, progress):
        for callback in self.progress_listeners:
            try:
                callback(progress)
            except Exception:
                self.logger.exception("Progress listener failed")


def positive_int(value):
    """
    argparse type for strictly positive integers.
    """
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError("%r is not an integer" % (value,))
    if number < 1:
        raise argparse.ArgumentTypeError("%d must be at least 1" % number)
    return number


def non_negative_float(value):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError("%r is not a number" % (value,))
    if number < 0:
        raise argparse.ArgumentTypeError("%s must not be negative" % value)
    return number


def get_arg_parser():
    """
    Sets up argparse. This is done separately to enable collection of help messages.
    """
    # Disable prefix matching to avoid prefix collisions for unseen prober arguments
    parser = argparse.ArgumentParser(description='Run strategies across lanes of proxy ports.', allow_abbrev=False, add_help=False, prog="coordinator.py")

    lane_group = parser.add_argument_group('control aspects of lanes')
    lane_group.add_argument('--threads', action='store', type=positive_int, default=4, help="number of lanes to run in parallel (clamped to the strategy and lane port counts)")
    lane_group.add_argument('--use-hosts', action='store_true', help="start the proxy with the configured hosts file")

    port_group = parser.add_argument_group('control aspects of port handling')
    port_group.add_argument('--attempt-delay', action='store', type=non_negative_float, default=executor.ATTEMPT_DELAY, help="seconds between attempts to free a lane port")
    port_group.add_argument('--state-attempts', action='store', type=positive_int, default=ports.service.MAX_ATTEMPTS, help="checks made while waiting for the proxy to start or stop")
    port_group.add_argument('--state-interval', action='store', type=non_negative_float, default=ports.service.INTERVAL, help="seconds between those checks")

    logging_group = parser.add_argument_group('control aspects of coordinator logging and storage')
    logging_group.add_argument('--output-directory', action='store', help="where to output lane and proxy logs")

    return parser


def get_args(cmd):
    """
    Creates an argparser and collects arguments.

    Returns:
        dict: parsed args
    """
    parser = get_arg_parser()
    args, _ = parser.parse_known_args(cmd)
    return vars(args)
