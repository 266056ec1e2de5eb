#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# qvc.py

###############################################################################
# Synopsis:                                                                   #
# QVC logs in to one or more QNAP NAS appliances, keeps their sessions under  #
#  watch and exposes volume capacity metrics for Prometheus to scrape.        #
#                                                                             #
# A lost session stops QVC with exit code 1; run it under a process           #
#  supervisor (systemd, Docker restart policy, Kubernetes) to log in again.   #
#                                                                             #
# License: the Apache License Version 2.0                                     #
###############################################################################

# =============== imports =====================================================

import argparse
import asyncio
from getpass import getpass
import logging
from logging.handlers import RotatingFileHandler
import os
import platform
import signal
import subprocess
import sys

import distro

from qvc import VERSION
from qvc.metrics import VolumeMetrics
from qvc.supervisors import Exporter
from qvc.supervisors import HTTP_TIMEOUT, INT_LIVENESS_FREQ, INT_METRICS_FREQ, MAX_CHECK_CYCLES, RETRY_BACKOFF

# =============== default vars ================================================

# Create a read-only QNAP user and a qtoken for it on each NAS
QNAP_USER = 'admin'
QVC_PORT = 9095
QVC_ADDRESS = '0.0.0.0'

FORMAT = '%(asctime)-15s - %(levelname)s - %(funcName)s - %(lineno)d - %(message)s'
DATEFMT = '%Y-%m-%dT%H:%M:%SZ'

CA_STORE_DISTROS = ['ubuntu', 'debian', 'alpine']

# =============== functions code ==============================================


def env_flag(name):
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def parse_targets(entries):
    """
    Turn HOST=TOKEN entries (or comma-separated lists of them) into (host, token) tuples.

    A bare HOST is accepted and gets an empty token. Raises ValueError on
    empty hosts and duplicates.
    """
    targets = []
    seen = set()
    for entry in entries:
        for item in entry.split(','):
            item = item.strip()
            if item == '':
                continue
            host, _, token = item.partition('=')
            host = host.strip()
            if host == '':
                raise ValueError('target without host: ' + repr(item))
            if host in seen:
                raise ValueError('duplicate target: ' + host)
            seen.add(host)
            targets.append((host, token.strip()))
    return targets


def setup_logging(loglevel, logfile=None):
    if logfile:
        handler = RotatingFileHandler(
            logfile,
            mode='a',
            maxBytes=10000000,
            backupCount=1,
            encoding=None,
            delay=True)
        logging.basicConfig(level=loglevel, format=FORMAT, datefmt=DATEFMT, handlers=[handler])
        logging.info('Logging to file: ' + logfile)
    else:
        logging.basicConfig(level=loglevel, format=FORMAT, datefmt=DATEFMT)
    logging.getLogger('asyncio').setLevel(level=loglevel)
    logging.getLogger('apscheduler').setLevel(level=loglevel)
    logging.getLogger('aiohttp').setLevel(level=loglevel)


def install_ca_chain(ca_chain):
    """
    Copy a CA chain to the OS certificate store so that self-signed QNAP
    certificates verify. Returns False on unsupported systems.
    """
    if platform.system() != 'Linux' or distro.id() not in CA_STORE_DISTROS:
        logging.warning('CA chain import is supported on ' + ', '.join(CA_STORE_DISTROS) +
                        ' only. Import ' + ca_chain + ' manually.')
        return False
    if not os.path.exists(ca_chain):
        raise FileNotFoundError(ca_chain)
    logging.info('Copying CA chain to OS certificate store.')
    dest = '/usr/local/share/ca-certificates/' + os.path.basename(ca_chain)
    subprocess.run(['sudo', 'cp', ca_chain, dest], check=True)
    # NOTE: update-ca-certificates ignores files that are not world-readable
    subprocess.run(['sudo', 'chmod', '644', dest], check=True)
    subprocess.run(['sudo', 'update-ca-certificates'], check=True)
    logging.info('OS certificate store refreshed.')
    return True


def build_parser():
    parser = argparse.ArgumentParser(
        prog="qvc",
        description="Collects QNAP volume metrics and exposes them to Prometheus.",
        epilog="License: the Apache License 2.0"
    )
    parser.add_argument('-t', '--target', action='append', default=None, metavar='HOST=TOKEN',
                        help='QNAP host and its qtoken; repeat for more hosts. Default: QNAP_TARGETS (comma separated)')
    parser.add_argument('-u', '--user', type=str, required=False,
                        default=os.environ.get('QNAP_USER', QNAP_USER),
                        help='read-only QNAP user the qtokens belong to. Default: QNAP_USER or ' + QNAP_USER)
    parser.add_argument('-s', '--scheme', type=str, required=False,
                        default=os.environ.get('QNAP_SCHEME', 'https'), choices=['http', 'https'],
                        help='scheme of the QNAP API. Default: https')
    parser.add_argument('-k', '--insecure', action='store_true', default=env_flag('QNAP_INSECURE'),
                        help='do not verify QNAP TLS certificates. Default: QNAP_INSECURE or off')
    parser.add_argument('-p', '--port', type=int, required=False,
                        default=int(os.environ.get('QVC_PORT', QVC_PORT)),
                        help='port of the metrics endpoint. Default: ' + str(QVC_PORT))
    parser.add_argument('-a', '--address', type=str, required=False,
                        default=os.environ.get('QVC_ADDRESS', QVC_ADDRESS),
                        help='listen address of the metrics endpoint. Default: ' + QVC_ADDRESS)
    parser.add_argument('-fl', '--frequency-liveness', type=int, required=False, metavar='LIVE',
                        default=int(os.environ.get('INT_LIVENESS_FREQ', INT_LIVENESS_FREQ)),
                        help='session check interval in seconds. Default: ' + str(INT_LIVENESS_FREQ))
    parser.add_argument('-fm', '--frequency-metrics', type=int, required=False, metavar='MET',
                        default=int(os.environ.get('INT_METRICS_FREQ', INT_METRICS_FREQ)),
                        help='volume metrics collection interval in seconds. Default: ' + str(INT_METRICS_FREQ))
    parser.add_argument('-rb', '--retry-backoff', type=int, required=False,
                        default=int(os.environ.get('RETRY_BACKOFF', RETRY_BACKOFF)),
                        help='seconds to wait before retrying a failed request. Default: ' + str(RETRY_BACKOFF))
    parser.add_argument('-mc', '--max-check-cycles', type=int, required=False,
                        default=int(os.environ.get('MAX_CHECK_CYCLES', MAX_CHECK_CYCLES)),
                        help='session check cycles after which QVC exits to log in again. Default: ' +
                        str(MAX_CHECK_CYCLES))
    parser.add_argument('-to', '--timeout', type=int, required=False,
                        default=int(os.environ.get('HTTP_TIMEOUT', HTTP_TIMEOUT)),
                        help='timeout of QNAP API requests in seconds. Default: ' + str(HTTP_TIMEOUT))
    parser.add_argument('--abort-on-login-failure', action='store_true',
                        default=env_flag('QVC_ABORT_ON_LOGIN_FAILURE'),
                        help='exit at startup if any login fails instead of letting the session check catch it. Default: off')
    parser.add_argument('--evict-stale', action='store_true', default=env_flag('QVC_EVICT_STALE'),
                        help='remove series of volumes missing from the latest collection. Default: off (keep last value)')
    parser.add_argument('-ll', '--loglevel', type=str, default='INFO', required=False, choices=(
        'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'), help='log level for console output. Default: INFO')
    parser.add_argument('-lf', '--logfile', type=str, default=None,
                        required=False, help='log file name. QVC logs only to console by default. Default: None')
    parser.add_argument('-c', '--ca-chain', type=str, default=None, required=False,
                        help='Optional filename with your (full) CA chain to be copied to the Ubuntu/Debian/Alpine OS certificate store. Default: None')
    parser.add_argument('-v', '--version', action='store_true', required=False,
                        help='Show program version and exit.')
    return parser


async def main(args, targets):
    exporter = Exporter(
        targets,
        args.user,
        metrics=VolumeMetrics(evict_stale=args.evict_stale),
        scheme=args.scheme,
        insecure=args.insecure,
        timeout=args.timeout,
        liveness_interval=args.frequency_liveness,
        metrics_interval=args.frequency_metrics,
        retry_backoff=args.retry_backoff,
        max_check_cycles=args.max_check_cycles,
        abort_on_login_failure=args.abort_on_login_failure,
        address=args.address,
        port=args.port)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, exporter.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    return await exporter.run()


def cli(argv=None):
    args = build_parser().parse_args(argv)

    if args.version:
        print("QVC Version: " + VERSION)
        sys.exit(0)

    setup_logging(args.loglevel, args.logfile)

    entries = args.target if args.target else [os.environ.get('QNAP_TARGETS', '')]
    try:
        targets = parse_targets(entries)
    except ValueError as e:
        logging.error('Invalid target: ' + str(e) + '. Exiting.')
        sys.exit(1)
    if not targets:
        logging.error('No QNAP targets given (use -t HOST=TOKEN or QNAP_TARGETS). Exiting.')
        sys.exit(1)
    for i, (host, token) in enumerate(targets):
        if token == '':
            targets[i] = (host, getpass("Enter the qtoken for " + host + " (not logged): "))
    logging.info('QVC ' + VERSION + ' collecting from: ' + ', '.join(host for host, _ in targets))

    if args.insecure:
        logging.warning('TLS certificate verification of QNAP hosts is disabled.')

    if args.ca_chain is not None:
        try:
            install_ca_chain(args.ca_chain)
        except FileNotFoundError:
            logging.error('CA chain file not found. Exiting.')
            sys.exit(1)
        except subprocess.CalledProcessError as e:
            logging.error('Failed to import CA chain: ' + str(e) + '. Exiting.')
            sys.exit(1)

    try:
        exit_code = asyncio.run(main(args, targets))
    except KeyboardInterrupt:
        exit_code = 0
    except Exception as e:
        logging.critical("Exception: %s", str(e))
        exit_code = 1
    sys.exit(exit_code)


if __name__ == '__main__':
    cli()
