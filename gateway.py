"""
PedaClic — Moneroo hosted-checkout client.
We never touch card or mobile-money data: initiate a payment, redirect the
user to the returned checkout URL, then verify the outcome on return.
"""
import os

import requests as http_req

import plans

MONEROO_SECRET_KEY = os.environ.get('MONEROO_SECRET_KEY', '')
MONEROO_API_URL    = os.environ.get('MONEROO_API_URL', 'https://api.moneroo.io/v1').rstrip('/')

STATUSES = ('pending', 'success', 'failed', 'cancelled')


def _headers() -> dict:
    if not MONEROO_SECRET_KEY:
        raise ValueError('MONEROO_SECRET_KEY is not set. Add it to the environment variables.')
    return {'Authorization': f'Bearer {MONEROO_SECRET_KEY}',
            'Content-Type':  'application/json',
            'Accept':        'application/json'}


def _check(r) -> dict:
    if r.status_code == 401:  raise ValueError('Invalid MONEROO_SECRET_KEY.')
    if r.status_code == 429:  raise ValueError('Payment gateway rate limit hit, wait a moment.')
    if not r.ok:              raise ValueError(f'Payment gateway error {r.status_code}: {r.text[:200]}')
    return r.json().get('data') or {}


def _call(method, path: str, **kwargs) -> dict:
    try:
        r = method(f'{MONEROO_API_URL}{path}', headers=_headers(), timeout=30, **kwargs)
    except http_req.exceptions.ConnectionError:
        raise ValueError('Cannot reach the payment gateway. Check your internet connection.')
    except http_req.exceptions.Timeout:
        raise ValueError('Payment gateway timed out, please try again.')
    return _check(r)


def initiate_payment(plan_id: str, email: str, name: str, user_id: str, return_url: str):
    """Returns (payment_id, checkout_url)."""
    plan = plans.get_plan(plan_id)
    first, _, last = (name or email.split('@')[0]).partition(' ')
    data = _call(http_req.post, '/payments/initialize', json={
        'amount':      plan['price'],
        'currency':    plan['currency'],
        'description': f"PedaClic Premium — {plan['name']}",
        'return_url':  return_url,
        'customer':    {'email': email, 'first_name': first, 'last_name': last or first},
        'metadata':    {'user_id': user_id, 'plan': plan_id},
    })
    payment_id, checkout_url = data.get('id'), data.get('checkout_url')
    if not payment_id or not checkout_url:
        raise ValueError('Payment gateway returned an incomplete response.')
    return payment_id, checkout_url


def verify_payment(payment_id: str) -> str:
    """Returns one of STATUSES."""
    data = _call(http_req.get, f'/payments/{payment_id}/verify')
    status = (data.get('status') or 'pending').lower()
    if status in ('successful', 'completed', 'paid'):
        status = 'success'
    elif status in ('canceled',):
        status = 'cancelled'
    return status if status in STATUSES else 'failed'
