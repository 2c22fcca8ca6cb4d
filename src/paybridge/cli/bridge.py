"""CLI: paybridge serve, paybridge send, paybridge loopback"""

import json
from contextlib import closing
from typing import Any, Optional

import click
from rich.console import Console
from rich.json import JSON

from paybridge.config import BridgeConfig
from paybridge.correlator import Correlator
from paybridge.errors import BridgeError, CorrelationTimeout
from paybridge.models.envelope import Envelope
from paybridge.registry import MethodRegistry, default_registry
from paybridge.responder import Responder
from paybridge.transport.bus import EventBus
from paybridge.transport.envelope import EnvelopeCodec

console = Console()


def _load_config(environment: str) -> BridgeConfig:
    from paybridge.cli.main import _load_config
    return _load_config(environment)


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    raise SystemExit(1)


def _with_store_id(payload: str, method: str, registry: MethodRegistry, store_id: Optional[str]) -> str:
    """Fill ``storeId`` from KODY_STORE_ID when the request shape has one and the payload lacks it."""
    op = registry.lookup(method)
    if not store_id or op is None or "store_id" not in op.request_type.model_fields:
        return payload
    try:
        document: Any = json.loads(payload) if payload.strip() else {}
    except ValueError:
        return payload
    if not isinstance(document, dict) or document.get("storeId"):
        return payload
    document["storeId"] = store_id
    return json.dumps(document, separators=(",", ":"))


def _make_responder(cfg: BridgeConfig, bus: EventBus, codec: EnvelopeCodec, registry: MethodRegistry) -> Responder:
    return Responder(
        bus,
        codec,
        registry,
        cfg.backend_client(),
        topic=cfg.bus.topic,
        require_credential=cfg.backend.require_api_key,
        default_credential=cfg.backend.api_key,
        fetch_size=cfg.bus.fetch_size,
        keepalive_interval=cfg.bus.keepalive_interval,
        replay_preset=cfg.bus.replay_preset,
        replay_id=cfg.bus.replay_id,
    )


def _make_correlator(cfg: BridgeConfig, bus: EventBus, codec: EnvelopeCodec, registry: MethodRegistry) -> Correlator:
    return Correlator(
        bus,
        codec,
        topic=cfg.bus.topic,
        registry=registry,
        keepalive_interval=cfg.bus.keepalive_interval,
        default_credential=cfg.backend.api_key,
    )


def _print_response(envelope: Envelope, json_output: bool) -> None:
    try:
        document = json.loads(envelope.payload) if envelope.payload else None
    except ValueError:
        document = None
    if json_output:
        click.echo(json.dumps({
            "correlationId": envelope.correlation_id,
            "method": envelope.method,
            "payload": document if document is not None else envelope.payload,
        }))
        return
    style = "red" if envelope.is_error else "green"
    console.print(f"[{style}]{envelope.method}[/{style}] [dim]{envelope.correlation_id}[/dim]")
    if document is not None:
        console.print(JSON.from_data(document))
    elif envelope.payload:
        console.print(envelope.payload)


def _send(correlator: Correlator, method: str, payload: str, credential: Optional[str],
          timeout: float, json_output: bool) -> None:
    try:
        if json_output:
            response = correlator.send_and_wait(method, payload, credential=credential, timeout=timeout)
        else:
            with console.status(f"Waiting for {method}..."):
                response = correlator.send_and_wait(method, payload, credential=credential, timeout=timeout)
    except CorrelationTimeout as e:
        _fail(f"{e.message} (correlation {e.correlation_id})")
    except BridgeError as e:
        _fail(e.message)
    _print_response(response, json_output)


@click.command("serve")
@click.argument("environment")
def serve_cmd(environment: str):
    """Run the responder until interrupted."""
    cfg = _load_config(environment)
    registry = default_registry()
    try:
        bus = cfg.build_bus()
    except BridgeError as e:
        _fail(e.message)
    with closing(bus):
        try:
            codec = EnvelopeCodec.from_bus(bus, cfg.bus.topic, identity=cfg.bus.user_id)
            responder = _make_responder(cfg, bus, codec, registry)
            responder.start()
        except BridgeError as e:
            _fail(e.message)
        console.print(f"[cyan]Listening on {cfg.bus.topic} (Ctrl+C to exit)[/cyan]")
        try:
            responder.run_forever()
        except KeyboardInterrupt:
            pass
        finally:
            responder.stop()


@click.command("send")
@click.argument("environment")
@click.argument("method")
@click.argument("payload", default="{}")
@click.option("--credential", "-k", default=None, help="API key (defaults to KODY_API_KEY).")
@click.option("--timeout", "-t", type=float, default=None, help="Seconds to wait (defaults to RESPONSE_TIMEOUT).")
@click.option("--json-output", "--json", is_flag=True)
def send_cmd(environment: str, method: str, payload: str, credential: Optional[str],
             timeout: Optional[float], json_output: bool):
    """Publish one request and wait for its response."""
    cfg = _load_config(environment)
    registry = default_registry()
    payload = _with_store_id(payload, method, registry, cfg.backend.store_id)
    try:
        bus = cfg.build_bus()
    except BridgeError as e:
        _fail(e.message)
    with closing(bus):
        try:
            codec = EnvelopeCodec.from_bus(bus, cfg.bus.topic, identity=cfg.bus.user_id)
        except BridgeError as e:
            _fail(e.message)
        with _make_correlator(cfg, bus, codec, registry) as correlator:
            _send(correlator, method, payload, credential, timeout or cfg.bus.response_timeout, json_output)


@click.command("loopback")
@click.argument("environment")
@click.argument("method")
@click.argument("payload", default="{}")
@click.option("--credential", "-k", default=None, help="API key (defaults to KODY_API_KEY).")
@click.option("--timeout", "-t", type=float, default=None, help="Seconds to wait (defaults to RESPONSE_TIMEOUT).")
@click.option("--json-output", "--json", is_flag=True)
def loopback_cmd(environment: str, method: str, payload: str, credential: Optional[str],
                 timeout: Optional[float], json_output: bool):
    """Run a responder and send one request through it, in one process."""
    cfg = _load_config(environment)
    registry = default_registry()
    payload = _with_store_id(payload, method, registry, cfg.backend.store_id)
    try:
        bus = cfg.build_bus()
    except BridgeError as e:
        _fail(e.message)
    with closing(bus):
        try:
            codec = EnvelopeCodec.from_bus(bus, cfg.bus.topic, identity=cfg.bus.user_id)
            responder = _make_responder(cfg, bus, codec, registry)
            responder.start()
        except BridgeError as e:
            _fail(e.message)
        try:
            with _make_correlator(cfg, bus, codec, registry) as correlator:
                _send(correlator, method, payload, credential, timeout or cfg.bus.response_timeout, json_output)
        finally:
            responder.stop()
