import asyncio
import json
import sys

sys.path.insert(0, '.')

import pytest

from ingest.errors import StreamError
from main import TradingSettings, TradingSystem, build_parser, main, parse_args
from config.config_loader import load_config
from monitoring.audit_log import OrderAuditLog
from strategy.lot_size import RoundingMode
from strategy.trading_state import CycleOutcome, TradingState
from tests.fakes import FakeClock, FakeSession, depth_message, fill_response


ARGV = ['testnet.binance.vision', 'key', 'secret', 'btcusdt', '15', '30', '60', '0.0001']


def _settings(tmp_path, **overrides) -> TradingSettings:
    values = dict(
        rest_host='testnet.binance.vision',
        stream_host='stream.binance.com',
        api_key='key',
        api_secret='secret',
        symbol='BTCUSDT',
        target_amount=1.0,
        buy_delay_s=0,
        max_sell_delay_s=60,
        activation_threshold=0.0001,
        audit_log=str(tmp_path / 'log.json'),
    )
    values.update(overrides)
    return TradingSettings(**values)


def test_full_cycle_buys_then_sells(tmp_path):
    deep_book = [(100.0, 5.0)]
    moved_book = [(101.0, 5.0)]
    session = FakeSession(
        order_responses=[
            fill_response('1', '0.0099', '0.99'),
            fill_response('0.0099', '0.0099', '1.0'),
        ],
        messages=[
            b'{"result": null, "id": 0}',
            depth_message(bids=deep_book),
            depth_message(bids=[(100.0, 0.1)]),
            depth_message(bids=moved_book),
        ],
    )
    settings = _settings(tmp_path)
    system = TradingSystem(settings, session=session, audit_log=OrderAuditLog(settings.audit_log), clock=FakeClock())

    async def _run():
        await system.initialize()
        outcomes = [await system.run_cycle() for _ in range(4)]
        await system.stop()
        return outcomes

    outcomes = asyncio.run(_run())

    assert session.connected and session.closed
    assert session.subscribed == ['BTCUSDT']
    assert outcomes == [None, CycleOutcome.BOUGHT, CycleOutcome.SKIPPED, CycleOutcome.SOLD_THRESHOLD]
    assert system.machine.state is TradingState.EMPTY
    audit = json.loads((tmp_path / 'log.json').read_text())
    assert [entry['executedQty'] for entry in audit] == ['0.0099', '0.0099']


def test_run_stops_on_event(tmp_path):
    session = FakeSession(messages=[depth_message(bids=[(100.0, 0.1)])] * 3)
    settings = _settings(tmp_path)
    system = TradingSystem(settings, session=session, audit_log=OrderAuditLog(settings.audit_log), clock=FakeClock())

    async def _run():
        stop_event = asyncio.Event()
        original = system.handle_message

        async def counted(raw):
            outcome = await original(raw)
            if system.cycles == 2:
                stop_event.set()
            return outcome

        system.handle_message = counted
        await system.run(stop_event)

    asyncio.run(_run())
    assert system.cycles == 2
    assert len(session.messages) == 1


class SilentSession(FakeSession):
    """A stream that never delivers a message."""

    def __init__(self):
        super().__init__()
        self.read_cancelled = False

    async def read_depth_message(self) -> bytes:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.read_cancelled = True
            raise


def test_stop_interrupts_pending_read(tmp_path):
    session = SilentSession()
    settings = _settings(tmp_path)
    system = TradingSystem(settings, session=session, audit_log=OrderAuditLog(settings.audit_log))

    async def _run():
        stop_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, stop_event.set)
        await asyncio.wait_for(system.run(stop_event), 2)

    asyncio.run(_run())
    assert session.read_cancelled
    assert system.cycles == 0


def test_stream_failure_propagates(tmp_path):
    settings = _settings(tmp_path)
    system = TradingSystem(settings, session=FakeSession(), audit_log=OrderAuditLog(settings.audit_log))

    with pytest.raises(StreamError):
        asyncio.run(system.run(asyncio.Event()))


def test_cli_rejects_extra_positional_arguments():
    with pytest.raises(SystemExit):
        parse_args(ARGV + ['extra'])


def test_missing_required_setting_aborts_before_network(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('exchange:\n  rest_host: testnet.binance.vision\n')

    with pytest.raises(SystemExit):
        main(['--config', str(path), 'testnet.binance.vision', 'key', 'secret'])


def test_positionals_override_config_and_config_fills_the_rest(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        'exchange:\n'
        '  rest_host: cfg.example.com\n'
        '  api_key: cfg-key\n'
        '  api_secret: cfg-secret\n'
        '  symbol: ethusdt\n'
        'trading:\n'
        '  target_amount: 20\n'
        '  buy_delay_s: 5\n'
        '  max_sell_delay_s: 10\n'
        '  activation_threshold: 0.01\n'
    )
    args = parse_args(['testnet.binance.vision', 'cli-key'])

    settings = TradingSettings.from_sources(args, load_config(path))

    assert settings.rest_host == 'testnet.binance.vision'
    assert settings.api_key == 'cli-key'
    assert settings.api_secret == 'cfg-secret'
    assert settings.symbol == 'ETHUSDT'
    assert settings.target_amount == 20.0
    assert settings.buy_delay_s == 5.0
    assert settings.max_sell_delay_s == 10.0
    assert settings.activation_threshold == 0.01


def test_settings_merge_cli_over_config(tmp_path):
    args = parse_args(ARGV + ['--rounding-mode', 'quote_aware', '--base-amount', '--audit-log', str(tmp_path / 'a.json')])
    from config import config

    settings = TradingSettings.from_sources(args, config)

    assert settings.symbol == 'BTCUSDT'
    assert settings.target_amount == 15.0
    assert settings.buy_delay_s == 30.0
    assert settings.rounding_mode is RoundingMode.QUOTE_AWARE
    assert settings.quote_denominated is False
    assert settings.stream_host == 'stream.binance.com'
    assert settings.audit_log == str(tmp_path / 'a.json')


def test_invalid_trading_parameters_abort_before_network():
    with pytest.raises(SystemExit):
        main(['testnet.binance.vision', 'key', 'secret', 'BTCUSDT', '0', '30', '60', '0.0001'])


def test_config_expands_environment(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text('exchange:\n  api_key: ${TEST_DT_KEY}\n  api_secret: ${TEST_DT_MISSING}\n')
    monkeypatch.setenv('TEST_DT_KEY', 'from-env')
    monkeypatch.delenv('TEST_DT_MISSING', raising=False)

    cfg = load_config(path)

    assert cfg.exchange['api_key'] == 'from-env'
    assert cfg.section('exchange').get('api_secret', 'unset') == 'unset'
    assert cfg.section('missing').get('anything') is None


def test_audit_log_is_valid_json_array(tmp_path):
    path = tmp_path / 'audit' / 'log.json'
    with OrderAuditLog(path) as audit:
        audit.record('{"executedQty":"1","fills":[ ]}')
        audit.record('plain text error')
    text = path.read_text()
    assert '{"executedQty":"1","fills":[ ]}' in text
    assert json.loads(text) == [{'executedQty': '1', 'fills': []}, 'plain text error']


def test_parser_describes_usage():
    assert 'activation_threshold' in build_parser().format_usage()
