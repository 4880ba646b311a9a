from decimal import Decimal

import pytest
from click.testing import CliRunner

from apartment_ledger.cli import cli
from apartment_ledger.config import LedgerConfig
from apartment_ledger.engine import create_engine_from_config
from apartment_ledger.ledger_store import LedgerStore
from apartment_ledger.models import Apartment, EntryType, ReferenceType
from apartment_ledger.session import SessionManager

from conftest import make_apartment, make_building


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / 'ledger.yaml'
    path.write_text(
        f"database:\n  type: sqlite\n  name: {tmp_path / 'ledger.db'}\n",
        encoding='utf-8',
    )
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def seeded(runner, config_path):
    result = runner.invoke(cli, ['--config', config_path, 'init-db'])
    assert result.exit_code == 0, result.output

    engine = create_engine_from_config(LedgerConfig.from_yaml(config_path).database)
    with SessionManager(engine).session_scope() as session:
        apartment = make_apartment(session, make_building(session), 1)
        LedgerStore(session).append(apartment.id, EntryType.DEBIT, '42.00', 'Charge', ReferenceType.EXPENSE, 1, None)
        apartment_id = apartment.id
    engine.dispose()
    return apartment_id


def test_init_db(runner, config_path):
    result = runner.invoke(cli, ['--config', config_path, 'init-db'])

    assert result.exit_code == 0
    assert 'Schema ready' in result.output


def test_recalculate_reports_and_fixes_drift(runner, config_path, seeded):
    dry = runner.invoke(cli, ['--config', config_path, 'recalculate', '--dry-run'])
    assert dry.exit_code == 0, dry.output
    assert 'dry run' in dry.output

    fixed = runner.invoke(cli, ['--config', config_path, 'recalculate'])
    assert fixed.exit_code == 0, fixed.output

    again = runner.invoke(cli, ['--config', config_path, 'recalculate'])
    assert 'balances consistent' in again.output

    engine = create_engine_from_config(LedgerConfig.from_yaml(config_path).database)
    with SessionManager(engine).session_scope() as session:
        assert session.get(Apartment, seeded).cached_balance == Decimal('-42.00')
    engine.dispose()


def test_balance_shows_ledger(runner, config_path, seeded):
    result = runner.invoke(cli, ['--config', config_path, 'balance', str(seeded)])

    assert result.exit_code == 0, result.output
    assert '-42.00' in result.output


def test_balance_of_unknown_apartment_fails(runner, config_path, seeded):
    result = runner.invoke(cli, ['--config', config_path, 'balance', '999'])

    assert result.exit_code == 1
    assert 'NotFoundError' in result.output


def test_write_off(runner, config_path, seeded):
    result = runner.invoke(cli, ['--config', config_path, 'write-off', str(seeded), '--user', 'admin', '--yes'])
    assert result.exit_code == 0, result.output

    again = runner.invoke(cli, ['--config', config_path, 'write-off', str(seeded), '--user', 'admin', '--yes'])
    assert again.exit_code == 1
    assert 'already zero' in again.output
