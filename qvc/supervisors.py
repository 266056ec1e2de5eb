# -*- coding: utf-8 -*-
# supervisors.py

###############################################################################
# Synopsis:                                                                   #
# Per-host session liveness checks and volume metric refreshes, scheduled     #
#  with APScheduler, plus the orchestrator that logs in to every host, runs   #
#  the jobs and the metrics server, and stops everything once a session is    #
#  lost so that a process supervisor can restart QVC with fresh logins        #
#                                                                             #
# License: the Apache License Version 2.0                                     #
###############################################################################

# =============== imports =====================================================

import asyncio
from dataclasses import dataclass
import datetime
import logging
import time

import aiohttp
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from qvc.metrics import VolumeMetrics, start_metrics_server
from qvc.qnap_api import AuthError, QnapApiError, QnapClient

# =============== default vars ================================================

INT_LIVENESS_FREQ = 180
INT_METRICS_FREQ = 600
RETRY_BACKOFF = 10
MAX_CHECK_CYCLES = 5
HTTP_TIMEOUT = 30

# =============== functions code ==============================================


@dataclass
class HostTarget:
    host: str
    token: str = ''
    # NOTE: set once by the startup login, read-only afterwards
    sid: str = ''


class LivenessMonitor:
    """
    Periodically confirms that the SID of one host is still valid.

    Each successfully parsed check counts as one cycle. The host is declared
    dead when the appliance reports a status other than 1, or when the cycle
    count exceeds max_check_cycles, which forces a periodic restart and a
    fresh login. Transport and parse errors are retried after retry_backoff
    seconds and do not count. Dead is terminal: on_dead(host, reason) is
    called once and the monitor never checks again.
    """

    def __init__(self, target, client, on_dead, max_check_cycles=MAX_CHECK_CYCLES,
                 retry_backoff=RETRY_BACKOFF, sleep=asyncio.sleep, metrics=None):
        self.target = target
        self.client = client
        self.on_dead = on_dead
        self.max_check_cycles = max_check_cycles
        self.retry_backoff = retry_backoff
        self.sleep = sleep
        self.metrics = metrics
        self.cycles = 0
        self.dead = False

    async def check(self):
        """
        Run one check cycle. Returns False once the host is dead.
        """
        if self.dead:
            return False
        host = self.target.host
        while True:
            try:
                status = await self.client.check_sid(self.target.sid)
                break
            except QnapApiError as e:
                logging.error('Failed to check SID of ' + host + ': ' + str(e) +
                              '. Retrying in ' + str(self.retry_backoff) + ' seconds.')
                await self.sleep(self.retry_backoff)
        self.cycles += 1
        if self.metrics is not None:
            self.metrics.check_cycles.labels(host).set(self.cycles)
        if status != 1:
            reason = 'session reported as not live (status=' + repr(status) + ')'
        elif self.cycles > self.max_check_cycles:
            reason = 'session checked ' + str(self.cycles) + ' times, limit is ' + str(self.max_check_cycles)
        else:
            logging.info('SID of ' + host + ' is valid (check ' + str(self.cycles) + ').')
            return True
        self.dead = True
        logging.error('Error with checking SID of ' + host + ': ' + reason + '. Restarting...')
        self.on_dead(host, reason)
        return False


class MetricRefresher:
    """
    Periodically fetches the volume tree of one host and publishes it.

    A failed fetch is retried after retry_backoff seconds until it succeeds;
    the refresher never stops the process.
    """

    def __init__(self, target, client, metrics, retry_backoff=RETRY_BACKOFF, sleep=asyncio.sleep):
        self.target = target
        self.client = client
        self.metrics = metrics
        self.retry_backoff = retry_backoff
        self.sleep = sleep
        self.iteration = 0

    async def refresh(self):
        """
        Run one refresh cycle and return the number of series written.
        """
        host = self.target.host
        while True:
            try:
                samples = await self.client.volumes(self.target.sid)
                break
            except QnapApiError as e:
                logging.error('Error fetching volumes of ' + host + ': ' + str(e) +
                              '. Retrying in ' + str(self.retry_backoff) + ' seconds.')
                await self.sleep(self.retry_backoff)
        self.iteration += 1
        written = self.metrics.publish(host, samples)
        logging.info('==> ITERATION ' + str(self.iteration) + ' of volume refresh for ' + host +
                     ': ' + str(len(samples)) + ' volumes, ' + str(written) + ' series.')
        return written


class Exporter:
    """
    Wires hosts, their monitors and refreshers, the scheduler and the metrics server.

    run() returns the process exit code: 1 after a lost session or an aborted
    startup login, 0 after stop().
    """

    def __init__(self, targets, user, metrics=None, scheme='https', insecure=False,
                 timeout=HTTP_TIMEOUT, liveness_interval=INT_LIVENESS_FREQ,
                 metrics_interval=INT_METRICS_FREQ, retry_backoff=RETRY_BACKOFF,
                 max_check_cycles=MAX_CHECK_CYCLES, abort_on_login_failure=False,
                 address='0.0.0.0', port=None, client_factory=QnapClient, sleep=asyncio.sleep):
        self.targets = [HostTarget(host, token) for host, token in targets]
        self.user = user
        self.metrics = metrics if metrics is not None else VolumeMetrics()
        self.scheme = scheme
        self.insecure = insecure
        self.timeout = timeout
        self.liveness_interval = liveness_interval
        self.metrics_interval = metrics_interval
        self.retry_backoff = retry_backoff
        self.max_check_cycles = max_check_cycles
        self.abort_on_login_failure = abort_on_login_failure
        self.address = address
        self.port = port
        self.client_factory = client_factory
        self.sleep = sleep
        self.clients = {}
        self.monitors = {}
        self.refreshers = {}
        self.scheduler = None
        self.exit_code = 0
        self._stopped = asyncio.Event()

    def session_lost(self, host, reason):
        """
        Called by a liveness monitor when its host is dead. Stops all hosts.
        """
        logging.critical('Session of ' + host + ' lost (' + reason +
                         '). Stopping all collection so that QVC can be restarted.')
        self.exit_code = 1
        self._stopped.set()

    def stop(self):
        if not self._stopped.is_set():
            logging.info('Stop requested.')
            self.exit_code = 0
            self._stopped.set()

    async def _login(self, target):
        client = self.clients[target.host]
        try:
            target.sid = await client.login(self.user, target.token)
        except AuthError as e:
            self.metrics.login_success.labels(target.host).set(0)
            logging.error('Login to ' + target.host + ' failed: ' + str(e))
            return False
        self.metrics.login_success.labels(target.host).set(1)
        return True

    async def login_all(self):
        """
        Log in to every host once. Returns the list of hosts whose login failed.

        Hosts with a failed login keep an empty SID; their first liveness check
        then declares them dead.
        """
        time_start = round(time.time(), 3)
        results = await asyncio.gather(*(self._login(t) for t in self.targets))
        failed = [t.host for t, ok in zip(self.targets, results) if not ok]
        time_taken = max(0.0, round(time.time() - time_start, 3))
        logging.info('Logged in to ' + str(len(self.targets) - len(failed)) + ' of ' +
                     str(len(self.targets)) + ' hosts in ' + str(time_taken) + ' seconds.')
        return failed

    def schedule(self):
        """
        Create the scheduler with one liveness and one refresh job per host.
        """
        self.scheduler = AsyncIOScheduler(job_defaults={'misfire_grace_time': 10, 'coalesce': True})
        now = datetime.datetime.now()
        for target in self.targets:
            client = self.clients[target.host]
            monitor = LivenessMonitor(target, client, self.session_lost,
                                      max_check_cycles=self.max_check_cycles,
                                      retry_backoff=self.retry_backoff, sleep=self.sleep,
                                      metrics=self.metrics)
            refresher = MetricRefresher(target, client, self.metrics,
                                        retry_backoff=self.retry_backoff, sleep=self.sleep)
            self.monitors[target.host] = monitor
            self.refreshers[target.host] = refresher
            self.scheduler.add_job(monitor.check, 'interval', seconds=self.liveness_interval,
                                   max_instances=1, next_run_time=now,
                                   id='liveness-' + target.host)
            self.scheduler.add_job(refresher.refresh, 'interval', seconds=self.metrics_interval,
                                   max_instances=1, next_run_time=now,
                                   id='refresh-' + target.host)
        logging.info('Liveness/refresh intervals: ' + str(self.liveness_interval) + '/' +
                     str(self.metrics_interval) + ' seconds for ' + str(len(self.targets)) + ' hosts.')
        return self.scheduler

    async def run(self):
        """
        Log in, start the jobs and the metrics server, and wait until stopped.
        """
        connector = aiohttp.TCPConnector(ssl=not self.insecure, enable_cleanup_closed=True)
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            for target in self.targets:
                self.clients[target.host] = self.client_factory(
                    target.host, session, scheme=self.scheme, stats=self.metrics.record_function)
            failed = await self.login_all()
            if failed and self.abort_on_login_failure:
                logging.critical('Login failed for ' + ', '.join(failed) +
                                 ' and abort on login failure is enabled. Exiting.')
                return 1
            self.schedule()
            runner = None
            try:
                self.scheduler.start()
                if self.port is not None:
                    runner = await start_metrics_server(self.metrics, self.address, self.port)
                logging.info('Starting service...')
                await self._stopped.wait()
            finally:
                if self.scheduler.running:
                    self.scheduler.shutdown(wait=False)
                # let cancelled jobs unwind before the HTTP session closes
                await asyncio.sleep(0)
                if runner is not None:
                    await runner.cleanup()
        logging.info('Collection stopped. Exit code: ' + str(self.exit_code))
        return self.exit_code
