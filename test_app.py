import pytest

from flask import current_app

from app import create_app
from config import Settings

OWNER = {'X-Caller': 'admin'}
ALICE = {'X-Caller': 'alice'}


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(clock):
    app = create_app(Settings(database_url='sqlite://', owner='admin', log_level='WARNING'),
                     clock=clock)
    app.config['TESTING'] = True
    return app.test_client()


def purchase(client, coverage="10", value="0.1", headers=ALICE):
    return client.post('/policies', json={'coverage_amount': coverage, 'value': value},
                       headers=headers)


def test_ledger_state(client):
    response = client.get('/ledger')
    assert response.status_code == 200
    assert response.get_json() == {'owner': 'admin', 'paused': False, 'balance': '0'}


def test_purchase_policy(client, clock):
    response = purchase(client)
    assert response.status_code == 201
    assert response.get_json()['events'] == [{
        'event': 'PolicyPurchased',
        'policyholder': 'alice',
        'coverage_amount': '10',
        'premium': '0.1',
    }]

    policy = client.get('/policies/alice').get_json()
    assert policy['premium'] == '0.1'
    assert policy['end_time'] == clock.now + 365 * 24 * 60 * 60
    assert client.get('/policies/alice/active').get_json()['active'] is True
    assert client.get('/ledger').get_json()['balance'] == '0.1'


def test_purchase_rejections(client):
    response = purchase(client, value="0.0009")
    assert response.status_code == 400
    assert response.get_json()['message'] == "Insufficient premium paid"

    response = purchase(client, coverage="101", value="100")
    assert response.status_code == 400
    assert response.get_json()['message'] == "Coverage amount too high"

    assert purchase(client).status_code == 201
    response = purchase(client)
    assert response.status_code == 400
    assert response.get_json()['message'] == "Active policy exists"


def test_purchase_input_validation(client):
    response = client.post('/policies', json={'coverage_amount': '10', 'value': '0.1'})
    assert response.status_code == 400

    response = client.post('/policies', json={'coverage_amount': 'ten'}, headers=ALICE)
    assert response.status_code == 400

    response = client.post('/policies', json={'coverage_amount': '10'}, headers=ALICE)
    assert response.get_json()['message'] == "Missing required field: value"


def test_claim_lifecycle(client):
    purchase(client)
    assert client.post('/deposits', json={'value': '20'}, headers=OWNER).status_code == 201

    response = client.post('/claims', json={
        'amount': '5', 'description': 'Water damage', 'evidence': 'ipfs://evidence'
    }, headers=ALICE)
    assert response.status_code == 201
    assert response.get_json()['events'][0]['claim_index'] == 0
    assert client.get('/claims/alice/count').get_json()['count'] == 1

    response = client.post('/claims/alice/0/process', json={'status': 'Approved'}, headers=ALICE)
    assert response.status_code == 403

    response = client.post('/claims/alice/0/process', json={'status': 'Approved'}, headers=OWNER)
    assert response.status_code == 200
    names = [e['event'] for e in response.get_json()['events']]
    assert names == ['ClaimProcessed', 'PayoutIssued']

    assert client.get('/claims/alice/0').get_json()['status'] == 'Approved'
    assert client.get('/accounts/alice').get_json()['balance'] == '5'
    assert client.get('/ledger').get_json()['balance'] == '15.1'

    response = client.post('/claims/alice/0/process', json={'status': 'Rejected'}, headers=OWNER)
    assert response.status_code == 400
    assert response.get_json()['message'] == "Claim already processed"


def test_failed_payout_leaves_claim_pending(client):
    purchase(client)
    client.post('/claims', json={
        'amount': '5', 'description': 'Water damage', 'evidence': 'ipfs://evidence'
    }, headers=ALICE)

    response = client.post('/claims/alice/0/process', json={'status': 'Approved'}, headers=OWNER)
    assert response.status_code == 502
    assert response.get_json()['message'] == "Transfer failed"
    assert client.get('/claims/alice/0').get_json()['status'] == 'Pending'
    assert client.get('/ledger').get_json()['balance'] == '0.1'


def test_invalid_process_status(client):
    response = client.post('/claims/alice/0/process', json={'status': 'Pending'}, headers=OWNER)
    assert response.status_code == 400


def test_pause_and_withdraw(client):
    purchase(client)
    response = client.post('/admin/pause', headers=OWNER)
    assert response.get_json()['events'] == [{'event': 'Paused', 'account': 'admin'}]

    response = purchase(client, headers={'X-Caller': 'bob'})
    assert response.status_code == 409
    assert response.get_json()['message'] == "Contract is paused"

    response = client.post('/admin/withdraw', headers=OWNER)
    assert response.status_code == 200
    assert client.get('/ledger').get_json()['balance'] == '0'
    assert client.get('/accounts/admin').get_json()['balance'] == '0.1'

    assert client.post('/admin/unpause', headers=OWNER).status_code == 200
    assert purchase(client, headers={'X-Caller': 'bob'}).status_code == 201


def test_transfer_ownership(client):
    response = client.post('/admin/owner', json={'new_owner': 'carol'}, headers=OWNER)
    assert response.status_code == 200
    assert client.get('/ledger').get_json()['owner'] == 'carol'
    assert client.post('/admin/pause', headers=OWNER).status_code == 403


def test_event_log(client):
    purchase(client)
    purchase(client)
    client.post('/admin/pause', headers=OWNER)
    names = [e['event'] for e in client.get('/events').get_json()['events']]
    assert names == ['PolicyPurchased', 'Paused']


def test_not_found(client):
    assert client.get('/policies/nobody').status_code == 404
    assert client.get('/claims/nobody/0').status_code == 404
    assert client.get('/claims/nobody').get_json() == []
    assert client.get('/no-such-route').status_code == 404


def test_oversized_amounts_rejected(client):
    response = client.post('/policies', json={'coverage_amount': '1e999999', 'value': '1'},
                           headers=ALICE)
    assert response.status_code == 400

    response = client.post('/deposits', json={'value': '1e60'}, headers=OWNER)
    assert response.status_code == 400
    assert client.get('/ledger').get_json()['balance'] == '0'


def test_deposit_amount_is_exact(client):
    response = client.post('/deposits', json={'value': '12345678901.123456789012345678'},
                           headers=OWNER)
    assert response.get_json()['events'][0]['amount'] == '12345678901.123456789012345678'
    assert client.get('/ledger').get_json()['balance'] == '12345678901.123456789012345678'


def client_with_transfer(clock, transfer):
    app = create_app(Settings(database_url='sqlite://', owner='admin', log_level='WARNING'),
                     clock=clock, transfer=transfer)
    app.config['TESTING'] = True
    return app.test_client()


def submit_funded_claim(client):
    purchase(client)
    client.post('/deposits', json={'value': '20'}, headers=OWNER)
    client.post('/claims', json={
        'amount': '5', 'description': 'Water damage', 'evidence': 'ipfs://evidence'
    }, headers=ALICE)


def test_nested_pause_rolled_back_with_failed_payout(clock):
    def pause_then_refuse(recipient, amount):
        current_app.extensions['policy_ledger'].pause('admin')
        raise RuntimeError("recipient refuses value")

    client = client_with_transfer(clock, pause_then_refuse)
    submit_funded_claim(client)

    response = client.post('/claims/alice/0/process', json={'status': 'Approved'}, headers=OWNER)
    assert response.status_code == 502

    assert client.get('/ledger').get_json() == {'owner': 'admin', 'paused': False, 'balance': '20.1'}
    assert client.get('/claims/alice/0').get_json()['status'] == 'Pending'
    names = [e['event'] for e in client.get('/events').get_json()['events']]
    assert 'Paused' not in names


def test_nested_pause_kept_with_successful_payout(clock):
    def pause_then_accept(recipient, amount):
        current_app.extensions['policy_ledger'].pause('admin')

    client = client_with_transfer(clock, pause_then_accept)
    submit_funded_claim(client)

    response = client.post('/claims/alice/0/process', json={'status': 'Approved'}, headers=OWNER)
    assert response.status_code == 200

    assert client.get('/ledger').get_json() == {'owner': 'admin', 'paused': True, 'balance': '15.1'}
    assert client.get('/claims/alice/0').get_json()['status'] == 'Approved'
    names = [e['event'] for e in client.get('/events').get_json()['events']]
    assert names[-3:] == ['ClaimProcessed', 'Paused', 'PayoutIssued']


def test_reentrant_withdraw_during_payout(clock):
    def reenter(recipient, amount):
        current_app.extensions['policy_ledger'].withdraw('admin')

    client = client_with_transfer(clock, reenter)
    submit_funded_claim(client)

    response = client.post('/claims/alice/0/process', json={'status': 'Approved'}, headers=OWNER)
    assert response.status_code == 502
    assert response.get_json()['message'] == "Transfer failed"

    assert client.get('/ledger').get_json()['balance'] == '20.1'
    assert client.get('/accounts/admin').get_json()['balance'] == '0'
    assert client.get('/claims/alice/0').get_json()['status'] == 'Pending'
