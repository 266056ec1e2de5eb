# -*- coding: utf-8 -*-
# metrics.py

###############################################################################
# Synopsis:                                                                   #
# Holds the latest QNAP volume gauges of all hosts in a Prometheus registry   #
#  and serves them to Prometheus scrapes over aiohttp                         #
#                                                                             #
# License: the Apache License Version 2.0                                     #
###############################################################################

# =============== imports =====================================================

import logging
import threading

from aiohttp import web
from prometheus_client import CollectorRegistry, Gauge, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST

from qvc.units import convert_size

# =============== default vars ================================================

PREFIX = 'qnap_volume'
VOLUME_LABELS = ('volume_name', 'unit', 'host')

# family name -> help text
FAMILIES = {
    'free_size': 'Free size of volume in KB',
    'used_size': 'Used size of volume in KB',
    'capacity': 'Capacity of volume in KB',
}

# =============== functions code ==============================================


class VolumeMetrics:
    """
    Process-wide store of the latest volume gauges.

    Every host's refresher writes here and the /metrics handler reads from
    here. Gauge children lock on set, and host is part of every label set, so
    writers of different hosts never touch the same series.

    Series of volumes that disappear upstream are kept (last value stays
    visible) unless evict_stale is enabled.
    """

    def __init__(self, evict_stale=False, registry=None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.evict_stale = evict_stale
        self.gauges = {}
        for family, description in FAMILIES.items():
            self.gauges[family] = Gauge(PREFIX + '_' + family, description,
                                        VOLUME_LABELS, registry=self.registry)
        # Collector self instrumentation
        self.function_duration = Gauge(
            'qvc_function_duration_seconds', 'Time taken by the last QNAP API call',
            ('host', 'function'), registry=self.registry)
        self.login_success = Gauge(
            'qvc_login_success', 'Whether the startup login returned a SID',
            ('host',), registry=self.registry)
        self.check_cycles = Gauge(
            'qvc_session_check_cycles', 'Session check cycles since startup',
            ('host',), registry=self.registry)
        # host -> set of (family, labels) written by the latest publish
        self._series = {}
        self._series_lock = threading.Lock()

    def set(self, family, labels, value):
        """
        Overwrite the value of one series. labels is (volume_name, unit, host).
        """
        self.gauges[family].labels(*labels).set(value)

    def publish(self, host, samples):
        """
        Project a list of VolumeSample of one host into the three volume families.
        """
        written = set()
        for sample in samples:
            for family, size, unit in (
                    ('free_size', sample.free_size, sample.free_unit),
                    ('used_size', sample.used_size, sample.used_unit),
                    ('capacity', sample.capacity, sample.capacity_unit)):
                labels = (sample.name, unit, host)
                self.set(family, labels, convert_size(size, unit))
                written.add((family, labels))
        with self._series_lock:
            previous = self._series.get(host, set())
            if self.evict_stale:
                stale = previous - written
                for family, labels in stale:
                    self.gauges[family].remove(*labels)
                if stale:
                    logging.info('Evicted ' + str(len(stale)) + ' stale volume series of ' + host + '.')
                self._series[host] = written
            else:
                self._series[host] = previous | written
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            logging.debug('Published ' + str(len(written)) + ' volume series for ' + host)
        return len(written)

    def record_function(self, host, function, time_taken):
        """
        Store the time taken by the last call of function on host.
        """
        self.function_duration.labels(host, function).set(time_taken)

    def snapshot(self):
        """
        Return the whole registry in Prometheus text exposition format (bytes).
        """
        return generate_latest(self.registry)


METRICS_KEY = web.AppKey('metrics', VolumeMetrics)


async def metrics_handler(request):
    """
    GET /metrics: current registry snapshot for Prometheus.
    """
    metrics = request.app[METRICS_KEY]
    return web.Response(body=metrics.snapshot(), headers={'Content-Type': CONTENT_TYPE_LATEST})


async def index_handler(request):
    """
    GET /: pointer to the metrics path.
    """
    return web.Response(text='QNAP Volume Collector. Metrics are at /metrics\n')


def make_app(metrics):
    """
    Build the aiohttp application that exposes metrics at /metrics.
    """
    app = web.Application()
    app[METRICS_KEY] = metrics
    app.router.add_get('/metrics', metrics_handler)
    app.router.add_get('/', index_handler)
    return app


async def start_metrics_server(metrics, address, port):
    """
    Start serving metrics and return the AppRunner (call cleanup() to stop).
    """
    runner = web.AppRunner(make_app(metrics), access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, address, port)
    await site.start()
    logging.info('Metrics are available at http://' + str(address) + ':' + str(port) + '/metrics')
    return runner
