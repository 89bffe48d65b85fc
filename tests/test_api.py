import pytest
from fastapi.testclient import TestClient

from reportgate import main
from reportgate.auth_tokens import create_identity_token
from reportgate.main import app

from conftest import OWNER_EMAIL, UnavailableStore


def _auth(email):
    token, _ = create_identity_token(email=email)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def owner_headers():
    return _auth(OWNER_EMAIL)


def test_healthz(client):
    assert client.get('/healthz').json() == {'ok': True}


def test_create_report_requires_identity(client):
    response = client.post('/api/reports', json={'title': 'Roof inspection'})
    assert response.status_code == 401


def test_invalid_token_is_rejected(client, report):
    response = client.post(
        f"/api/reports/{report['id']}/access-check",
        headers={'Authorization': 'Bearer not-a-jwt'},
    )
    assert response.status_code == 401


def test_owner_manages_access_controls(client, owner_headers):
    created = client.post(
        '/api/reports',
        json={'title': 'Roof inspection', 'building_address': 'Sydvej 4'},
        headers=owner_headers,
    )
    assert created.status_code == 201
    report_id = created.json()['id']
    assert created.json()['owner_email'] == OWNER_EMAIL

    empty = client.get(f'/api/reports/{report_id}/access-controls', headers=owner_headers)
    assert empty.status_code == 200
    assert empty.json() == {'report_id': report_id, 'access_controls': None}

    saved = client.put(
        f'/api/reports/{report_id}/access-controls',
        json={'is_public': True, 'access_password': 'abc123', 'max_access_count': 2},
        headers=owner_headers,
    )
    assert saved.status_code == 200
    controls = saved.json()['access_controls']
    assert controls['is_public'] is True
    assert controls['has_password'] is True
    assert 'access_password' not in controls
    assert controls['max_access_count'] == 2
    assert controls['current_access_count'] == 0

    removed = client.delete(f'/api/reports/{report_id}/access-controls', headers=owner_headers)
    assert removed.status_code == 204
    again = client.get(f'/api/reports/{report_id}/access-controls', headers=owner_headers)
    assert again.json()['access_controls'] is None


def test_only_owner_can_change_access_controls(client, report):
    response = client.put(
        f"/api/reports/{report['id']}/access-controls",
        json={'is_public': True},
        headers=_auth('someone-else@x.com'),
    )
    assert response.status_code == 403


def test_invalid_settings_are_a_bad_request(client, report, owner_headers):
    response = client.put(
        f"/api/reports/{report['id']}/access-controls",
        json={'is_public': True, 'access_password': ''},
        headers=owner_headers,
    )
    assert response.status_code == 400


def test_out_of_range_expiry_is_a_bad_request(client, report, owner_headers):
    response = client.put(
        f"/api/reports/{report['id']}/access-controls",
        json={'is_public': True, 'expires_at': '9999-12-31T23:00:00-05:00'},
        headers=owner_headers,
    )
    assert response.status_code == 400
    assert 'expires_at' in response.json()['detail']


def test_unknown_report_is_not_found(client, owner_headers):
    assert client.get('/api/reports/999/access-controls', headers=owner_headers).status_code == 404
    shared = client.post('/api/shared/999')
    assert shared.status_code == 404
    assert shared.json()['decision']['reason'] == 'REPORT_NOT_FOUND'


def test_access_check_does_not_count_views(client, report, owner_headers):
    client.put(
        f"/api/reports/{report['id']}/access-controls",
        json={'is_public': True, 'max_access_count': 1},
        headers=owner_headers,
    )
    for _ in range(3):
        response = client.post(f"/api/reports/{report['id']}/access-check")
        assert response.json() == {
            'allowed': True,
            'reason': None,
            'message': None,
            'remaining_access': 1,
        }


def test_shared_link_flow(client, report, owner_headers):
    client.put(
        f"/api/reports/{report['id']}/access-controls",
        json={'is_public': True, 'access_password': 'abc123', 'max_access_count': 2},
        headers=owner_headers,
    )
    url = f"/api/shared/{report['id']}"

    wrong = client.post(url, json={'password': 'wrong'})
    assert wrong.status_code == 403
    assert wrong.json()['decision']['reason'] == 'INVALID_PASSWORD'
    assert wrong.json()['decision']['message'] == 'Invalid access password'

    first = client.post(url, json={'password': 'abc123'})
    assert first.status_code == 200
    assert first.json()['decision']['remaining_access'] == 1
    assert first.json()['report']['title'] == report['title']

    second = client.post(url, json={'password': 'abc123'})
    assert second.status_code == 200
    assert second.json()['decision']['remaining_access'] == 0

    exhausted = client.post(url, json={'password': 'abc123'})
    assert exhausted.status_code == 403
    assert exhausted.json()['decision']['reason'] == 'QUOTA_EXCEEDED'


def test_shared_link_uses_identity_for_allow_list(client, report, owner_headers):
    client.put(
        f"/api/reports/{report['id']}/access-controls",
        json={'is_public': True, 'allowed_emails': ['a@x.com']},
        headers=owner_headers,
    )
    url = f"/api/shared/{report['id']}"

    anonymous = client.post(url)
    assert anonymous.status_code == 403
    assert anonymous.json()['decision']['reason'] == 'EMAIL_NOT_AUTHORIZED'

    assert client.post(url, headers=_auth('b@x.com')).status_code == 403
    assert client.post(url, headers=_auth('a@x.com')).status_code == 200


def test_shared_link_without_controls_is_open(client, report):
    response = client.post(f"/api/shared/{report['id']}")
    assert response.status_code == 200
    assert response.json()['decision'] == {
        'allowed': True,
        'reason': None,
        'message': None,
        'remaining_access': None,
    }


def test_deleting_report_closes_link(client, report, owner_headers):
    assert client.delete(f"/api/reports/{report['id']}", headers=owner_headers).status_code == 204
    assert client.post(f"/api/shared/{report['id']}").status_code == 404


def test_shared_link_fails_closed_when_store_is_down(client, report, monkeypatch):
    monkeypatch.setattr(main.access_service, 'store', UnavailableStore())
    response = client.post(f"/api/shared/{report['id']}")
    assert response.status_code == 503
    assert response.json()['decision'] == {
        'allowed': False,
        'reason': 'CHECK_ERROR',
        'message': 'Error checking access',
        'remaining_access': None,
    }
