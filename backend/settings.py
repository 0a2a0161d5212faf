"""
Runtime configuration for the billing sync service.
Values come from the environment, optionally seeded from backend/.env.
"""
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

DEFAULT_API_BASE = 'https://app.pennylane.com/api/external/v2'


class CabinetConfig(BaseModel):
    key: str
    name: str
    token: str = ''
    company_id: str = ''


def _env_key(key):
    return key.upper().replace('-', '_')


def load_cabinets(env=None):
    """Parse CABINETS ("audit-up:Audit Up,zerah:Zerah Fiduciaire") with their tokens."""
    env = os.environ if env is None else env
    cabinets = []
    for chunk in env.get('CABINETS', '').split(','):
        if not chunk.strip():
            continue
        key, _, name = chunk.partition(':')
        key = key.strip()
        cabinets.append(CabinetConfig(
            key=key,
            name=name.strip() or key,
            token=env.get(f'BILLING_TOKEN_{_env_key(key)}', ''),
            company_id=env.get(f'BILLING_COMPANY_ID_{_env_key(key)}', ''),
        ))
    return cabinets


MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'honoraires')
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

BILLING_API_BASE = os.environ.get('BILLING_API_BASE', DEFAULT_API_BASE).rstrip('/')
BILLING_MODE = os.environ.get('BILLING_MODE', 'live')
BILLING_TIMEOUT = float(os.environ.get('BILLING_TIMEOUT', '30'))
BILLING_MAX_RETRIES = int(os.environ.get('BILLING_MAX_RETRIES', '5'))
# Pause between invoice-line requests, in seconds
BILLING_REQUEST_INTERVAL = float(os.environ.get('BILLING_REQUEST_INTERVAL', '0.1'))

CABINETS = load_cabinets()
