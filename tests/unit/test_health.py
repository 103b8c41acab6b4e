def test_health_endpoint(client):
    """/health reports liveness as JSON."""
    response = client.get('/health')

    assert response.status_code == 200
    assert response.json == {
        'ok': True,
        'status': 'healthy',
        'service': 'soap-relay',
        'version': '1.0.0',
    }


def test_root_endpoint_is_plain_text(client):
    response = client.get('/')

    assert response.status_code == 200
    assert response.mimetype == 'text/plain'
    assert response.get_data(as_text=True) == 'SOAP Relay OK'


def test_health_is_not_gated(client):
    """The shared secret protects the relay only."""
    assert client.get('/health', headers={'X-Proxy-Secret': 'wrong'}).status_code == 200


def test_swagger_spec_is_served(client):
    response = client.get('/swagger.yaml')

    assert response.status_code == 200
    assert b'/api/v1/soap' in response.data


def test_swagger_ui_is_mounted_under_docs(client):
    response = client.get('/api/docs/')

    assert response.status_code == 200
    assert b'swagger' in response.data.lower()


def test_swagger_ui_does_not_shadow_the_relay(client):
    """GET on the relay endpoint reaches the API blueprint, not the docs."""
    assert client.get('/api/v1/soap').status_code == 405
