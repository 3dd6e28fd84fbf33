"""
test_promotions_api.py — Tests for the promotions JSON routes.
Run: pytest test_promotions_api.py -v
"""
import pytest

from app import create_app, db
from app.auth.models import User, RoleEnum
from app.promotions.models import Promotion, AppliedPromotion, PromotionRedemption
from app.utils.logging import HANDLER_NAMES


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture(scope='function')
def client():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        for username, role, segments in [
            ('admin', RoleEnum.admin, []),
            ('staff', RoleEnum.staff, []),
            ('shopper', RoleEnum.customer, ['vip']),
        ]:
            user = User(username=username, name=username.title(), role=role)
            user.segments_list = segments
            user.set_password('secret123')
            db.session.add(user)
        db.session.commit()
        yield app.test_client()
        db.session.remove()
        db.drop_all()


def login(c, username='admin'):
    resp = c.post('/auth/login', json={'username': username, 'password': 'secret123'})
    assert resp.status_code == 200
    return resp


def create(c, **body):
    payload = dict(name='Ten off', type='PERCENT', value=10, autoApply=True)
    payload.update(body)
    return c.post('/promotions/', json=payload)


CART = {
    'items': [
        {'productId': 'p1', 'categoryIds': ['shoes'], 'brand': 'Acme',
         'quantity': 2, 'unitPriceMinor': 2500},
        {'productId': 'p2', 'quantity': 1, 'unitPriceMinor': 5000},
    ],
    'shippingMinor': 900,
    'city': 'Haifa',
}


# ── 1. Auth ───────────────────────────────────────────────────────

def test_requires_login(client):
    resp = client.get('/promotions/')
    assert resp.status_code == 401
    assert resp.get_json()['ok'] is False


def test_bad_credentials(client):
    resp = client.post('/auth/login', json={'username': 'admin', 'password': 'nope'})
    assert resp.status_code == 401


def test_staff_can_read_but_not_write(client):
    login(client, 'staff')
    assert client.get('/promotions/').status_code == 200
    assert create(client).status_code == 403


# ── 2. Create / get / list ────────────────────────────────────────

def test_create_normalizes_and_stores(client):
    login(client)
    resp = create(client, code=' summer10 ', autoApply=False,
                  scope={'storewide': False, 'include': {'brands': ['ACME', 'acme']}},
                  limits={'maxUsesTotal': 10, 'usesTotal': 999})
    assert resp.status_code == 201
    promo = resp.get_json()['data']['promotion']
    assert promo['code'] == 'SUMMER10'
    assert promo['scope']['include']['brands'] == ['acme']
    assert promo['limits'] == {'maxUsesTotal': 10, 'maxUsesPerUser': None, 'usesTotal': 0}

    got = client.get(f"/promotions/{promo['id']}").get_json()['data']['promotion']
    assert got['name'] == 'Ten off'


def test_create_rejects_invalid_body(client):
    login(client)
    resp = create(client, type='BOGOF')
    assert resp.status_code == 400
    assert 'PROMO_INVALID_TYPE' in resp.get_json()['error']['details']

    resp = create(client, value=150)
    assert 'PROMO_INVALID_PERCENT' in resp.get_json()['error']['details']

    resp = create(client, startsAt='2026-02-01T00:00:00Z', endsAt='2026-01-01T00:00:00Z')
    assert 'PROMO_INVALID_DATE_RANGE' in resp.get_json()['error']['details']


def test_create_without_name_is_a_validation_error(client):
    login(client)
    resp = client.post('/promotions/', json={'type': 'PERCENT', 'value': 5})
    assert resp.status_code == 400
    assert resp.get_json()['error']['details'] == ['name']


def test_duplicate_code_conflicts(client):
    login(client)
    assert create(client, code='DUP').status_code == 201
    resp = create(client, name='Another', code='dup')
    assert resp.status_code == 409
    assert resp.get_json()['error']['code'] == 'PROMO_CODE_EXISTS'


def test_get_missing_promotion(client):
    login(client)
    resp = client.get('/promotions/999')
    assert resp.status_code == 404
    assert resp.get_json()['error']['code'] == 'PROMO_NOT_FOUND'


def test_list_filters_and_paginates(client):
    login(client)
    create(client, name='Low', priority=1)
    create(client, name='High', priority=9, code='HIGH', autoApply=False)
    create(client, name='Off', isActive=False)

    data = client.get('/promotions/?limit=2').get_json()['data']
    assert [p['name'] for p in data['items']] == ['High', 'Low']
    assert data['meta'] == {'page': 1, 'limit': 2, 'total': 3, 'pages': 2}

    coded = client.get('/promotions/?hasCode=true').get_json()['data']['items']
    assert [p['name'] for p in coded] == ['High']

    inactive = client.get('/promotions/?isActive=false').get_json()['data']['items']
    assert [p['name'] for p in inactive] == ['Off']


# ── 3. Patch ──────────────────────────────────────────────────────

def test_patch_merges_into_existing(client):
    login(client)
    promo = create(client, scope={'storewide': False, 'include': {'products': ['p1']}},
                   eligibility={'maxDiscountMinor': 500}).get_json()['data']['promotion']

    resp = client.patch(f"/promotions/{promo['id']}",
                        json={'name': 'Renamed', 'eligibility': {'maxDiscountMinor': None}})
    assert resp.status_code == 200
    updated = resp.get_json()['data']['promotion']
    assert updated['name'] == 'Renamed'
    assert updated['scope']['include']['products'] == ['p1']
    assert updated['eligibility']['maxDiscountMinor'] is None


def test_patch_cannot_touch_usage_counter(client):
    login(client)
    promo = create(client).get_json()['data']['promotion']
    with client.application.app_context():
        row = db.session.get(Promotion, promo['id'])
        row.uses_total = 4
        db.session.commit()

    resp = client.patch(f"/promotions/{promo['id']}", json={'limits': {'usesTotal': 0}})
    assert resp.get_json()['data']['promotion']['limits']['usesTotal'] == 4


def test_empty_patch_rejected(client):
    login(client)
    promo = create(client).get_json()['data']['promotion']
    resp = client.patch(f"/promotions/{promo['id']}", json={})
    assert resp.status_code == 400
    assert 'EMPTY_UPDATE' in resp.get_json()['error']['details']


def test_changing_type_requires_value(client):
    login(client)
    promo = create(client).get_json()['data']['promotion']
    resp = client.patch(f"/promotions/{promo['id']}", json={'type': 'FIXED_AMOUNT'})
    assert 'PROMO_VALUE_REQUIRED_WHEN_CHANGING_TYPE' in resp.get_json()['error']['details']

    resp = client.patch(f"/promotions/{promo['id']}", json={'type': 'FREE_SHIPPING'})
    assert resp.status_code == 200
    assert resp.get_json()['data']['promotion']['value'] == 0


# ── 4. Preview ────────────────────────────────────────────────────

def test_preview_reports_all_reasons(client):
    login(client)
    promo = create(client, code='VIPONLY', autoApply=False,
                   targeting={'mode': 'SEGMENT', 'allowedSegments': ['vip']},
                   eligibility={'cities': ['Eilat']}).get_json()['data']['promotion']

    resp = client.post(f"/promotions/{promo['id']}/preview", json=CART)
    data = resp.get_json()['data']
    assert data['evaluation']['eligible'] is False
    assert data['evaluation']['reasons'] == ['NOT_TARGETED', 'CITY_NOT_ELIGIBLE', 'CODE_REQUIRED']
    assert data['selected'] == []


def test_preview_resolves_segments_from_user(client):
    login(client)
    promo = create(client, targeting={'mode': 'SEGMENT', 'allowedSegments': ['vip']}
                   ).get_json()['data']['promotion']
    with client.application.app_context():
        shopper_id = User.query.filter_by(username='shopper').first().id

    body = dict(CART, userId=shopper_id)
    data = client.post(f"/promotions/{promo['id']}/preview", json=body).get_json()['data']
    assert data['evaluation']['eligible'] is True
    assert data['evaluation']['matchedSubtotalMinor'] == 10000
    assert data['selected'] == [{'promotionId': promo['id'], 'discountMinor': 1000, 'reasons': []}]


def test_preview_needs_items(client):
    login(client)
    promo = create(client).get_json()['data']['promotion']
    resp = client.post(f"/promotions/{promo['id']}/preview", json={'items': []})
    assert resp.status_code == 400


def test_preview_is_side_effect_free(client):
    login(client)
    promo = create(client).get_json()['data']['promotion']
    first = client.post(f"/promotions/{promo['id']}/preview", json=CART).get_json()
    second = client.post(f"/promotions/{promo['id']}/preview", json=CART).get_json()
    assert first == second
    with client.application.app_context():
        assert db.session.get(Promotion, promo['id']).uses_total == 0


# ── 5. Quote and apply ────────────────────────────────────────────

def _seed_checkout_promos(c):
    login(c)
    create(c, name='Ten off', stackingPolicy='COMBINABLE')
    create(c, name='Ship free', type='FREE_SHIPPING', stackingPolicy='COMBINABLE')
    create(c, name='Coded', type='FIXED_AMOUNT', value=700, code='EXTRA7',
           autoApply=False, stackingPolicy='COMBINABLE', limits={'maxUsesTotal': 1})
    c.post('/auth/logout')


def test_quote_combines_auto_apply_promotions(client):
    _seed_checkout_promos(client)
    login(client, 'shopper')
    data = client.post('/promotions/quote', json=CART).get_json()['data']
    assert data['selection']['totalDiscountMinor'] == 1000 + 900
    assert data['totals'] == {
        'subtotalMinor': 10000, 'shippingMinor': 900,
        'itemsDiscountMinor': 1000, 'shippingDiscountMinor': 900, 'totalMinor': 9000,
    }


def test_quote_with_code_adds_coded_promotion(client):
    _seed_checkout_promos(client)
    login(client, 'shopper')
    data = client.post('/promotions/quote', json=dict(CART, code='extra7')).get_json()['data']
    assert data['selection']['subtotalDiscountMinor'] == 1700


def test_apply_counts_once_and_snapshots(client):
    _seed_checkout_promos(client)
    login(client, 'shopper')
    body = dict(CART, code='EXTRA7')

    resp = client.post('/promotions/orders/ORD-1/apply', json=body)
    assert resp.status_code == 200
    assert len(resp.get_json()['data']['applied']) == 3

    # Repricing the same order does not count twice.
    client.post('/promotions/orders/ORD-1/apply', json=body)

    with client.application.app_context():
        coded = Promotion.query.filter_by(code='EXTRA7').first()
        assert coded.uses_total == 1
        assert AppliedPromotion.query.filter_by(order_ref='ORD-1').count() == 3
        assert PromotionRedemption.query.filter_by(order_ref='ORD-1').count() == 3

    # The single use is taken: another order no longer gets the coded promotion.
    data = client.post('/promotions/orders/ORD-2/apply', json=body).get_json()['data']
    assert data['selection']['subtotalDiscountMinor'] == 1000


def test_release_gives_uses_back(client):
    _seed_checkout_promos(client)
    login(client, 'shopper')
    client.post('/promotions/orders/ORD-9/apply', json=dict(CART, code='EXTRA7'))
    client.post('/auth/logout')

    login(client)
    resp = client.post('/promotions/orders/ORD-9/release')
    assert resp.get_json()['data']['released'] == 3
    with client.application.app_context():
        assert Promotion.query.filter_by(code='EXTRA7').first().uses_total == 0


def test_reapply_keeps_promotions_the_order_already_holds(client):
    _seed_checkout_promos(client)
    login(client, 'shopper')
    body = dict(CART, code='EXTRA7')

    first = client.post('/promotions/orders/ORD-1/apply', json=body).get_json()['data']
    second = client.post('/promotions/orders/ORD-1/apply', json=body).get_json()['data']
    assert second['selection'] == first['selection']
    assert second['selection']['subtotalDiscountMinor'] == 1700
    assert len(second['applied']) == 3

    with client.application.app_context():
        assert Promotion.query.filter_by(code='EXTRA7').first().uses_total == 1
        statuses = {r.status for r in PromotionRedemption.query.filter_by(order_ref='ORD-1')}
        assert statuses == {'reserved'}


def test_reapply_keeps_per_user_limited_promotion(client):
    login(client)
    create(client, name='Once per shopper', type='FIXED_AMOUNT', value=300,
           stackingPolicy='COMBINABLE', limits={'maxUsesPerUser': 1})
    client.post('/auth/logout')
    login(client, 'shopper')

    first = client.post('/promotions/orders/ORD-1/apply', json=CART).get_json()['data']
    second = client.post('/promotions/orders/ORD-1/apply', json=CART).get_json()['data']
    assert first['selection']['subtotalDiscountMinor'] == 300
    assert second['selection']['subtotalDiscountMinor'] == 300

    # The shopper's single use is held by ORD-1.
    other = client.post('/promotions/orders/ORD-2/apply', json=CART).get_json()['data']
    assert other['selection']['subtotalDiscountMinor'] == 0


def test_order_held_by_another_user_is_rejected(client):
    with client.application.app_context():
        rival = User(username='rival', name='Rival', role=RoleEnum.customer)
        rival.set_password('secret123')
        db.session.add(rival)
        db.session.commit()

    _seed_checkout_promos(client)
    login(client, 'shopper')
    client.post('/promotions/orders/ORD-1/apply', json=dict(CART, code='EXTRA7'))
    client.post('/auth/logout')

    login(client, 'rival')
    resp = client.post('/promotions/orders/ORD-1/apply', json=CART)
    assert resp.status_code == 409
    assert resp.get_json()['error']['code'] == 'PROMO_ORDER_USER_MISMATCH'

    with client.application.app_context():
        assert Promotion.query.filter_by(code='EXTRA7').first().uses_total == 1
        shopper_id = str(User.query.filter_by(username='shopper').first().id)
        owners = {r.user_id for r in PromotionRedemption.query.filter_by(order_ref='ORD-1')}
        assert owners == {shopper_id}


def test_confirmed_order_keeps_its_uses(client):
    _seed_checkout_promos(client)
    login(client, 'shopper')
    client.post('/promotions/orders/ORD-5/apply', json=dict(CART, code='EXTRA7'))
    assert client.post('/promotions/orders/ORD-5/confirm').status_code == 403
    client.post('/auth/logout')

    login(client)
    resp = client.post('/promotions/orders/ORD-5/confirm')
    assert resp.get_json()['data'] == {'orderRef': 'ORD-5', 'confirmed': 3}
    assert client.post('/promotions/orders/ORD-5/release').get_json()['data']['released'] == 0

    with client.application.app_context():
        assert Promotion.query.filter_by(code='EXTRA7').first().uses_total == 1
        statuses = {r.status for r in PromotionRedemption.query.filter_by(order_ref='ORD-5')}
        assert statuses == {'confirmed'}


def test_quote_falls_back_to_stored_city(client):
    with client.application.app_context():
        shopper = User.query.filter_by(username='shopper').first()
        shopper.city = 'Eilat'
        db.session.commit()

    login(client)
    create(client, name='Eilat only', eligibility={'cities': ['eilat']})
    client.post('/auth/logout')
    login(client, 'shopper')

    body = {k: v for k, v in CART.items() if k != 'city'}
    data = client.post('/promotions/quote', json=body).get_json()['data']
    assert data['selection']['subtotalDiscountMinor'] == 1000

    # A city in the request wins over the stored one.
    data = client.post('/promotions/quote', json=dict(body, city='Haifa')).get_json()['data']
    assert data['selection']['selected'] == []


# ── 6. Value-only patches ─────────────────────────────────────────

def test_value_only_patch_checked_against_stored_type(client):
    login(client)
    percent = create(client).get_json()['data']['promotion']
    resp = client.patch(f"/promotions/{percent['id']}", json={'value': 500})
    assert resp.status_code == 400
    assert 'PROMO_INVALID_PERCENT' in resp.get_json()['error']['details']

    resp = client.patch(f"/promotions/{percent['id']}", json={'value': 25})
    assert resp.get_json()['data']['promotion']['value'] == 25

    fixed = create(client, name='Fixed', type='FIXED_AMOUNT', value=500).get_json()['data']['promotion']
    resp = client.patch(f"/promotions/{fixed['id']}", json={'value': 12.5})
    assert 'PROMO_INVALID_FIXED_VALUE' in resp.get_json()['error']['details']

    # Patches that leave value alone are not asked for one.
    resp = client.patch(f"/promotions/{percent['id']}", json={'priority': 3})
    assert resp.status_code == 200


# ── 7. Logging ────────────────────────────────────────────────────

def test_app_factory_does_not_stack_log_handlers(client):
    create_app('testing')
    app = create_app('testing')
    ours = [h for h in app.logger.handlers if h.get_name() in HANDLER_NAMES]
    assert len(ours) == 1
