# -*- coding: utf-8 -*-
# qnap_api.py

###############################################################################
# Synopsis:                                                                   #
# Thin asynchronous client for the QNAP QTS HTTP management API: login with   #
#  a qtoken, session (SID) checks and volume tree retrieval                   #
#                                                                             #
# License: the Apache License Version 2.0                                     #
###############################################################################

# =============== imports =====================================================

import asyncio
from dataclasses import dataclass
import json
import logging
import time
import xml.etree.ElementTree as ET

import aiohttp

# =============== default vars ================================================

LOGIN_PATH = '/cgi-bin/authLogin.cgi'
UTIL_PATH = '/cgi-bin/filemanager/utilRequest.cgi'

qnap_headers = {'Accept': 'application/json, text/xml;q=0.9, */*;q=0.8'}

# =============== functions code ==============================================


class QnapApiError(Exception):
    """
    Request to the QNAP API failed or returned something we could not parse.
    """


class AuthError(QnapApiError):
    """
    Login did not produce a usable session ID.
    """


@dataclass
class VolumeSample:
    name: str
    free_size: float
    used_size: float
    capacity: float
    free_unit: str
    used_unit: str
    capacity_unit: str

    @classmethod
    def from_api(cls, item: dict) -> 'VolumeSample':
        # NOTE: QNAP returns sizes as strings, e.g. "1.75"
        return cls(
            name=item['volume_name'],
            free_size=float(item['free_size']),
            used_size=float(item['used_size']),
            capacity=float(item['capacity']),
            free_unit=item.get('volume_free_unit', ''),
            used_unit=item.get('unit', ''),
            capacity_unit=item.get('volume_unit', ''))


class QnapClient:
    """
    API client for a single QNAP host.

    The aiohttp session is owned by the caller and may be shared by clients of
    several hosts. Every method raises QnapApiError (or AuthError for login) on
    transport, HTTP status or parsing problems.
    """

    def __init__(self, host, session, scheme='https', stats=None):
        self.host = host
        self.session = session
        self.base_url = scheme + '://' + host
        # Optional callable(host, function, time_taken) for function timing stats
        self.stats = stats

    def _record(self, function_name, time_start):
        time_taken = max(0.0, round(time.time() - time_start, 3))
        if self.stats is not None:
            self.stats(self.host, function_name, time_taken)
        return time_taken

    async def _get(self, path, params):
        """
        GET a QNAP CGI endpoint and return the response body as text.
        """
        url = self.base_url + path
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            # NOTE: params carry the SID or qtoken so only their keys are logged
            logging.debug(f"[QNAP DEBUG] GET {url} params: {sorted(params)}")
        try:
            async with self.session.get(url, params=params, headers=qnap_headers) as response:
                if logging.getLogger().isEnabledFor(logging.DEBUG):
                    logging.debug(f"[QNAP DEBUG] Response status: {response.status}")
                try:
                    text = await response.text()
                except (UnicodeDecodeError, LookupError) as e:
                    raise QnapApiError(f"{self.host}: could not decode {path} response: {e}") from e
                if response.status != 200:
                    raise QnapApiError(
                        f"{self.host}: {path} returned HTTP {response.status}: {text[:200]}")
                return text
        except aiohttp.ClientError as e:
            raise QnapApiError(f"{self.host}: request to {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise QnapApiError(f"{self.host}: request to {path} timed out") from e

    async def login(self, user, token):
        """
        Log in with a qtoken and return the session ID (SID).

        Raises AuthError if the request fails, the XML response cannot be
        parsed or the SID is empty.
        """
        time_start = round(time.time(), 3)
        params = {'user': user, 'qtoken': token, 'remme': '1'}
        try:
            body = await self._get(LOGIN_PATH, params)
        except QnapApiError as e:
            raise AuthError(f"failed to get SID: {e}") from e
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise AuthError(f"{self.host}: failed to parse login XML: {e}") from e
        auth_passed = (root.findtext('.//authPassed') or '').strip()
        sid = (root.findtext('.//authSid') or '').strip()
        time_taken = self._record('login', time_start)
        if sid == '':
            raise AuthError('Got empty SID from response on ' + self.host)
        if auth_passed != '1':
            logging.warning(self.host + ': login returned a SID but authPassed=' + repr(auth_passed))
        logging.info('Obtained SID from ' + self.host + '. Time taken: ' + str(time_taken) + ' seconds.')
        return sid

    async def volumes(self, sid):
        """
        Fetch the volume tree and return a list of VolumeSample.
        """
        time_start = round(time.time(), 3)
        params = {'sid': sid, 'func': 'get_tree', 'is_iso': 'no', 'node': 'vol_root'}
        body = await self._get(UTIL_PATH, params)
        try:
            result = json.loads(body)
        except ValueError as e:
            raise QnapApiError(f"{self.host}: failed to parse volumes JSON: {e}") from e
        if not isinstance(result, list):
            raise QnapApiError(f"{self.host}: volumes response is not a list: {body[:200]}")
        try:
            samples = [VolumeSample.from_api(item) for item in result]
        except (KeyError, TypeError, ValueError) as e:
            raise QnapApiError(f"{self.host}: unexpected volume entry: {e!r}") from e
        time_taken = self._record('volumes', time_start)
        logging.info('Volumes of ' + self.host + ' gathered (' + str(len(samples)) +
                     ') in ' + str(time_taken) + ' seconds.')
        return samples

    async def check_sid(self, sid):
        """
        Ask the appliance whether sid is still valid and return the reported status.

        A status of 1 means the session is alive. None is returned if the
        response object has no status.
        """
        time_start = round(time.time(), 3)
        params = {'func': 'check_sid', 'sid': sid}
        body = await self._get(UTIL_PATH, params)
        try:
            result = json.loads(body)
        except ValueError as e:
            raise QnapApiError(f"{self.host}: failed to parse check_sid JSON: {e}") from e
        if not isinstance(result, dict):
            raise QnapApiError(f"{self.host}: check_sid response is not an object: {body[:200]}")
        self._record('check_sid', time_start)
        return result.get('status')
