"""
Strategy Executor

Runs one strategy on one lane: frees the lane's port, starts the proxy with the strategy,
probes every link through it, stops the proxy and classifies the result.
"""

import random
import time

import ports.state
import utils

BUCKETS = ("0-9", "10-19", "20-29", "30-39", "40-49", "50-59", "60-69", "70-79", "80-89", "90-99", "100")

# Port acquisition ceiling and the pause between attempts
ACQUIRE_ATTEMPTS = 3
ATTEMPT_DELAY = 1


def calculate_percentage(outcomes):
    """
    Percentage of outcomes that got any HTTP answer, rounded half up.

    Args:
        outcomes (list): list of :obj:`probers.prober.Outcome`

    Returns:
        int: success percentage in [0, 100]; 0 when nothing was probed
    """
    if not outcomes:
        return 0
    successes = len([outcome for outcome in outcomes if outcome.success])
    return int(100 * successes / len(outcomes) + 0.5)


def get_bucket(percentage):
    """
    Returns the decile bucket label for a percentage ("40-49", or "100").
    """
    if percentage == 100:
        return "100"
    low = (percentage // 10) * 10
    return "%d-%d" % (low, low + 9)


def in_range(percentage, selected):
    """
    Checks whether a percentage falls in a display selection ("all", "hide" or a bucket label).
    """
    if selected == "all":
        return True
    if selected == "hide":
        return False
    if selected in BUCKETS:
        return get_bucket(percentage) == selected
    return False


class TrialResult():
    """
    Outcome of one strategy trial. Created once, never modified afterwards.
    """
    def __init__(self, lane, strategy, percentage=0, bucket=None, outcomes=None, status=""):
        self.lane = lane
        self.strategy = strategy
        self.percentage = percentage
        self.bucket = bucket
        self.outcomes = tuple(outcomes or [])
        self.status = status

    @property
    def successes(self):
        return len([outcome for outcome in self.outcomes if outcome.success])

    def to_dict(self):
        return {
            "lane": self.lane,
            "strategy": self.strategy,
            "percentage": self.percentage,
            "bucket": self.bucket,
            "status": self.status,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }

    def format(self):
        """
        Renders the trial as a text block, one line per probed link.
        """
        lines = ["<===", "Strategy: %s" % self.strategy]
        lines += [str(outcome) for outcome in self.outcomes]
        lines.append("%d%%" % self.percentage)
        lines.append(self.status)
        lines.append("===>")
        return "\n".join(lines)

    def __repr__(self):
        return "TrialResult(lane=%r, percentage=%r, bucket=%r, strategy=%r)" % (self.lane, self.percentage, self.bucket, self.strategy)


class ProxyProcess():
    """
    Context manager holding the proxy up on a port for the duration of a trial.

    Entering starts the proxy and raises :obj:`utils.TrialAbortedException` if it does
    not come up; leaving always stops it and records the state the port ended in.
    """
    def __init__(self, controller, port, strategy, logger, use_hosts=False):
        self.controller = controller
        self.port = port
        self.strategy = strategy
        self.logger = logger
        self.use_hosts = use_hosts
        self.pid = None
        self.stop_state = None

    @property
    def stopped(self):
        """
        Whether the port was confirmed free after the trial.
        """
        return isinstance(self.stop_state, ports.state.Free)

    def __enter__(self):
        state = self.controller.start(self.port, self.strategy, use_hosts=self.use_hosts)
        if not isinstance(state, ports.state.InUseByUs):
            # A half-started proxy must not keep the port claimed
            self.stop_state = self.controller.stop(self.port)
            raise utils.TrialAbortedException("Failed to start: %s" % state.message)
        self.pid = state.pid
        self.logger.debug("Started proxy (pid %s) on port %d with strategy: %s", self.pid, self.port, self.strategy)
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.stop_state = self.controller.stop(self.port)
        if not self.stopped:
            self.logger.error("Failed to stop proxy on port %d: %s", self.port, self.stop_state.message)
        return False


class StrategyExecutor():
    def __init__(self, lane, port, strategy, links, controller, prober, logger,
                 proxy_host="127.0.0.1", use_hosts=False, attempts=ACQUIRE_ATTEMPTS, attempt_delay=ATTEMPT_DELAY):
        """
        Args:
            lane (int): lane number, starting at 1
            port (int): port owned by the lane
            strategy (str): proxy arguments to test
            links (list): links to probe; copied, the caller's list is never reordered
            controller (:obj:`ports.controller.PortController`): port lifecycle client
            prober (:obj:`probers.prober.Prober`): prober to check links with
            logger (:obj:`logging.Logger`): logger to log with
            proxy_host (str, '127.0.0.1'): address the proxy listens on
            use_hosts (bool, False): start the proxy with the configured hosts file
            attempts (int, 3): port acquisition attempts
            attempt_delay (float, 1): seconds between port acquisition attempts
        """
        self.lane = lane
        self.port = port
        self.strategy = strategy
        self.links = list(links)
        self.controller = controller
        self.prober = prober
        self.logger = logger
        self.proxy_host = proxy_host
        self.use_hosts = use_hosts
        self.attempts = attempts
        self.attempt_delay = attempt_delay

    def ensure_port_free(self):
        """
        Makes sure the lane's port is free before the proxy is started.

        Raises:
            :obj:`utils.TrialAbortedException`: if the port is held by another program
                or could not be freed within the attempt ceiling
        """
        for attempt in range(self.attempts):
            state = self.controller.check_state(self.port)

            if isinstance(state, ports.state.Free):
                return state

            if isinstance(state, ports.state.InUseByUs):
                self.logger.debug("Port %d still held by our process %s, stopping it", self.port, state.pid)
                stop = self.controller.stop(self.port)
                if isinstance(stop, ports.state.Free):
                    time.sleep(self.attempt_delay)
                    continue
                self.logger.error("Failed to stop leftover process on port %d: %s", self.port, stop.message)
            elif isinstance(state, ports.state.InUseByOthers):
                raise utils.TrialAbortedException("Port %d is used by another program." % self.port)
            else:
                self.logger.debug("Port %d check failed (%d/%d): %s", self.port, attempt + 1, self.attempts, state.message)
                time.sleep(self.attempt_delay)

        raise utils.TrialAbortedException("Could not free port %d after %d attempts." % (self.port, self.attempts))

    def shuffle_links(self):
        """
        Reorders the links with a uniform random permutation.
        """
        random.shuffle(self.links)

    def check_links(self, outcomes):
        """
        Probes every link in a fresh random order, one at a time.

        Args:
            outcomes (list): list the outcomes are appended to as they arrive
        """
        self.shuffle_links()
        for link in self.links:
            outcome = self.prober.probe(self.proxy_host, self.port, link)
            self.logger.debug("%s", outcome)
            outcomes.append(outcome)
        return outcomes

    def execute(self):
        """
        Runs the trial end to end. Never raises for trial failures.

        Returns:
            :obj:`TrialResult`: result of the trial
        """
        self.logger.debug("Testing strategy on port %d: %s", self.port, self.strategy)
        try:
            self.ensure_port_free()
        except utils.TrialAbortedException as exc:
            self.logger.error("%s Skipping strategy: %s", exc.msg, self.strategy)
            return TrialResult(self.lane, self.strategy, status="Failed to prepare port: %s" % exc.msg)

        proxy = ProxyProcess(self.controller, self.port, self.strategy, self.logger, use_hosts=self.use_hosts)
        outcomes = []
        try:
            with proxy:
                self.check_links(outcomes)
        except utils.TrialAbortedException as exc:
            self.logger.error("%s Strategy: %s", exc.msg, self.strategy)
            return TrialResult(self.lane, self.strategy, outcomes=outcomes, status=exc.msg)
        except Exception as exc:
            self.logger.exception("Trial failed for strategy: %s", self.strategy)
            status = "Trial failed: %s" % exc
            if proxy.stop_state is None:
                proxy.stop_state = self.controller.stop(self.port)
            if not proxy.stopped:
                status += "; failed to stop: %s" % proxy.stop_state.message
            return TrialResult(self.lane, self.strategy, outcomes=outcomes, status=status)

        percentage = calculate_percentage(outcomes)
        bucket = get_bucket(percentage) if outcomes else None
        if not proxy.stopped:
            # The port state is unconfirmed, so this trial must not count toward the statistics
            return TrialResult(self.lane, self.strategy, percentage=percentage, bucket=None, outcomes=outcomes,
                               status="Failed to stop: %s" % proxy.stop_state.message)

        self.logger.info("%d%% (%s): %s", percentage, bucket, self.strategy)
        return TrialResult(self.lane, self.strategy, percentage=percentage, bucket=bucket, outcomes=outcomes, status="Stopped")
