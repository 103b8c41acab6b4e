import base64

import requests


def test_health_over_http(live_server):
    response = requests.get(live_server.url('/health'))

    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


def test_relay_endpoint_success(live_server, mtls_server, client_bundle):
    """
    GIVEN a running relay and a remote endpoint requiring client certificates
    WHEN an authorized relay request is made
    THEN the remote SOAP response is returned.
    """
    proxy_secret = live_server.app.config['PROXY_SECRET']

    response = requests.post(
        live_server.url('/api/v1/soap'),
        headers={'X-Proxy-Secret': proxy_secret},
        json={
            'url': mtls_server.url + "/ws",
            'soapAction': 'Foo',
            'envelope': '<a/>',
            'pfxBase64': base64.b64encode(client_bundle).decode('ascii'),
            'pfxPassword': 'secret',
        },
    )

    assert response.status_code == 200
    assert response.json()['status'] == 200
    assert response.json()['body'] == '<b/>'
    assert mtls_server.received[0]['headers']['soapaction'] == 'Foo'


def test_relay_endpoint_requires_secret(live_server):
    response = requests.post(live_server.url('/api/v1/soap'), json={})

    assert response.status_code == 401
