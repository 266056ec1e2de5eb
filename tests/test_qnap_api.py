"""
QnapClient against a fake QNAP appliance served by aiohttp's TestServer.
"""

import json

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from qvc.qnap_api import AuthError, QnapApiError, QnapClient
from tests.fakes import make_undecodable_app

LOGIN_OK = (
    '<?xml version="1.0" encoding="UTF-8" ?>'
    '<QDocument><doQuick><![CDATA[]]></doQuick>'
    '<authPassed><![CDATA[1]]></authPassed>'
    '<authSid><![CDATA[abc123]]></authSid>'
    '</QDocument>'
)
LOGIN_EMPTY_SID = (
    '<QDocument><authPassed><![CDATA[0]]></authPassed>'
    '<authSid><![CDATA[]]></authSid></QDocument>'
)
VOLUMES = [
    {"volume_name": "DataVol1", "volume_id": 1, "free_size": "1.5", "used_size": "500",
     "capacity": "2", "volume_unit": "TB", "volume_free_unit": "TB", "unit": "GB"},
    {"volume_name": "Public", "volume_id": 2, "free_size": "800", "used_size": "200",
     "capacity": "1000", "volume_unit": "MB", "volume_free_unit": "MB", "unit": "MB"},
]


def make_qnap_app(login_body=LOGIN_OK, volumes_body=None, check_body='{"status": 1}', seen=None):
    if volumes_body is None:
        volumes_body = json.dumps(VOLUMES)
    if seen is None:
        seen = []

    async def login(request):
        seen.append(dict(request.query))
        return web.Response(text=login_body, content_type='text/xml')

    async def util(request):
        seen.append(dict(request.query))
        func = request.query.get('func')
        if func == 'get_tree':
            return web.Response(text=volumes_body, content_type='application/json')
        if func == 'check_sid':
            return web.Response(text=check_body, content_type='application/json')
        return web.Response(status=400, text='unknown func')

    app = web.Application()
    app.router.add_get('/cgi-bin/authLogin.cgi', login)
    app.router.add_get('/cgi-bin/filemanager/utilRequest.cgi', util)
    return app


def client_for(server, session, stats=None):
    return QnapClient(f"{server.host}:{server.port}", session, scheme='http', stats=stats)


@pytest.mark.asyncio
async def test_login_returns_sid_and_sends_credentials():
    seen = []
    async with TestServer(make_qnap_app(seen=seen)) as server:
        async with aiohttp.ClientSession() as session:
            sid = await client_for(server, session).login('monitor', 'qtoken-1')

    assert sid == 'abc123'
    assert seen == [{'user': 'monitor', 'qtoken': 'qtoken-1', 'remme': '1'}]


@pytest.mark.asyncio
async def test_login_with_empty_sid_raises_auth_error():
    async with TestServer(make_qnap_app(login_body=LOGIN_EMPTY_SID)) as server:
        async with aiohttp.ClientSession() as session:
            with pytest.raises(AuthError, match='empty SID'):
                await client_for(server, session).login('monitor', 'bad')


@pytest.mark.asyncio
async def test_login_with_unparseable_body_raises_auth_error():
    async with TestServer(make_qnap_app(login_body='<html>nope')) as server:
        async with aiohttp.ClientSession() as session:
            with pytest.raises(AuthError):
                await client_for(server, session).login('monitor', 'token')


@pytest.mark.asyncio
async def test_login_transport_error_raises_auth_error():
    async with aiohttp.ClientSession() as session:
        # nothing listens on port 1
        client = QnapClient('127.0.0.1:1', session, scheme='http')
        with pytest.raises(AuthError):
            await client.login('monitor', 'token')


@pytest.mark.asyncio
async def test_volumes_parses_samples_and_records_stats():
    stats = []
    seen = []
    async with TestServer(make_qnap_app(seen=seen)) as server:
        async with aiohttp.ClientSession() as session:
            client = client_for(server, session, stats=lambda *a: stats.append(a))
            samples = await client.volumes('abc123')

    assert [s.name for s in samples] == ['DataVol1', 'Public']
    first = samples[0]
    assert first.free_size == 1.5
    assert first.used_size == 500.0
    assert first.capacity == 2.0
    assert (first.free_unit, first.used_unit, first.capacity_unit) == ('TB', 'GB', 'TB')
    assert seen[0] == {'sid': 'abc123', 'func': 'get_tree', 'is_iso': 'no', 'node': 'vol_root'}
    assert stats[0][:2] == (client.host, 'volumes')


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    'not json',
    '{"volume_name": "x"}',
    '[{"volume_name": "x", "free_size": "abc", "used_size": "1", "capacity": "2"}]',
    '[{"free_size": "1", "used_size": "1", "capacity": "2"}]',
])
async def test_volumes_bad_payload_raises(body):
    async with TestServer(make_qnap_app(volumes_body=body)) as server:
        async with aiohttp.ClientSession() as session:
            with pytest.raises(QnapApiError):
                await client_for(server, session).volumes('abc123')


@pytest.mark.asyncio
async def test_check_sid_returns_status():
    async with TestServer(make_qnap_app(check_body='{"status": 0, "version": "5.1"}')) as server:
        async with aiohttp.ClientSession() as session:
            assert await client_for(server, session).check_sid('abc123') == 0


@pytest.mark.asyncio
async def test_check_sid_http_error_raises():
    app = web.Application()

    async def broken(request):
        return web.Response(status=503, text='busy')

    app.router.add_get('/cgi-bin/filemanager/utilRequest.cgi', broken)
    async with TestServer(app) as server:
        async with aiohttp.ClientSession() as session:
            with pytest.raises(QnapApiError, match='HTTP 503'):
                await client_for(server, session).check_sid('abc123')


@pytest.mark.asyncio
async def test_login_with_undecodable_body_raises_auth_error():
    async with TestServer(make_undecodable_app()) as server:
        async with aiohttp.ClientSession() as session:
            with pytest.raises(AuthError, match='decode'):
                await client_for(server, session).login('monitor', 'token')


@pytest.mark.asyncio
async def test_check_sid_and_volumes_with_undecodable_body_raise():
    async with TestServer(make_undecodable_app()) as server:
        async with aiohttp.ClientSession() as session:
            client = client_for(server, session)
            with pytest.raises(QnapApiError, match='decode'):
                await client.check_sid('abc123')
            with pytest.raises(QnapApiError, match='decode'):
                await client.volumes('abc123')
