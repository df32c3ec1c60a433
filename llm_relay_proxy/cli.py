#!/usr/bin/env python3
"""
CLI for the LLM Relay Proxy.

Usage:
    python -m llm_relay_proxy start
    python -m llm_relay_proxy status
"""

import logging
import os

import click
from dotenv import load_dotenv


@click.group()
def cli():
    """LLM Relay Proxy - OpenAI-compatible gateway for an upstream LLM aggregation API"""
    load_dotenv()


@cli.command('start')
@click.option('--host', default='0.0.0.0', help='Host to bind to')
@click.option('--port', default=8000, type=int, help='Port to bind to')
@click.option('--upstream', help='Upstream API base URL [env: UPSTREAM_BASE_URL]')
@click.option('--timeout-ms', type=int, help='Non-streaming request timeout in ms [env: REQUEST_TIMEOUT_MS, default: 120000]')
@click.option('--streaming-multiplier', type=float, help='Streaming timeout = request timeout * this [env: STREAMING_TIMEOUT_MULTIPLIER, default: 4]')
@click.option('--api-key-mode', type=click.Choice(['passthrough', 'override']), help='Use the caller key or a fixed key [env: API_KEY_MODE, default: passthrough]')
@click.option('--bindings-file', type=click.Path(exists=True, dir_okay=False), help='JSON model binding table [env: MODEL_BINDINGS_FILE]')
@click.option('--reload', is_flag=True, help='Enable auto-reload for development')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
def start(host, port, upstream, timeout_ms, streaming_multiplier, api_key_mode, bindings_file, reload, log_level):
    """Start the LLM relay proxy server.

    Streaming requests get a longer timeout than unary ones:

    \b
      unary      --timeout-ms                               (default 120000)
      streaming  max(--timeout-ms * --streaming-multiplier,
                     MIN_STREAMING_TIMEOUT_MS)              (default 480000)

    CLI flags override env vars (and .env), which override the built-in defaults.

    Examples:

    \b
      # Start with defaults
      llm-relay-proxy start
      # Shorter timeouts, debug logging
      llm-relay-proxy start --timeout-ms 30000 --log-level debug
      # Always use the key from OVERRIDE_API_KEY
      llm-relay-proxy start --api-key-mode override
    """
    import uvicorn

    # CLI flags override env vars
    if upstream is not None:
        os.environ['UPSTREAM_BASE_URL'] = upstream
    if timeout_ms is not None:
        os.environ['REQUEST_TIMEOUT_MS'] = str(timeout_ms)
    if streaming_multiplier is not None:
        os.environ['STREAMING_TIMEOUT_MULTIPLIER'] = str(streaming_multiplier)
    if api_key_mode is not None:
        os.environ['API_KEY_MODE'] = api_key_mode
    if bindings_file is not None:
        os.environ['MODEL_BINDINGS_FILE'] = bindings_file

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    click.echo(f"Starting LLM relay proxy on {host}:{port}...")
    click.echo("Press Ctrl+C to stop.\n")

    uvicorn.run(
        "llm_relay_proxy.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


@cli.command('status')
@click.option('--proxy', default='http://localhost:8000', help='LLM relay proxy URL')
@click.option('--check-upstream', is_flag=True, help='Also probe the upstream status endpoint')
@click.option('--api-key', envvar='OPENAI_API_KEY', help='Key used for the upstream probe [env: OPENAI_API_KEY]')
def status(proxy, check_upstream, api_key):
    """Show proxy status and request statistics.

    Examples:

        python -m llm_relay_proxy status
    """
    import requests

    try:
        # Get health
        headers = {'Authorization': f'Bearer {api_key}'} if api_key else {}
        health_resp = requests.get(
            f'{proxy}/health',
            params={'check_upstream': 'true'} if check_upstream else None,
            headers=headers,
        )
        if health_resp.status_code != 200:
            click.echo(f'Proxy unhealthy: {health_resp.text}')
            return

        health = health_resp.json()
        click.echo(f'Status: {health.get("status")}')
        click.echo(f'Uptime: {health.get("uptime_seconds", 0):.0f}s')
        click.echo(f'Upstream: {health.get("upstream_base_url")}')
        click.echo(f'Active requests: {health.get("active_requests", 0)}')

        reachable = health.get('upstream_reachable')
        if reachable is not None:
            status_icon = '✓' if reachable else '✗'
            click.echo(f'  {status_icon} upstream reachable')

        # Get request stats
        stats_resp = requests.get(f'{proxy}/stats')
        if stats_resp.status_code == 200:
            stats = stats_resp.json()
            click.echo(f'\nRequests:')
            click.echo(f'  total:     {stats.get("total_requests", 0)} ({stats.get("streaming_requests", 0)} streaming)')
            click.echo(f'  completed: {stats.get("completed_requests", 0)}')
            click.echo(f'  failed:    {stats.get("failed_requests", 0)}')
            click.echo(f'  timed out: {stats.get("timed_out_requests", 0)}')
            click.echo(f'  cancelled: {stats.get("cancelled_requests", 0)}')
            if stats.get('fallback_bindings'):
                click.echo(f'  unknown models routed to default: {stats["fallback_bindings"]}')
            if stats.get('discarded_lines'):
                click.echo(f'  malformed upstream lines dropped: {stats["discarded_lines"]}')

    except requests.exceptions.ConnectionError:
        click.echo(f'Error: Cannot connect to proxy at {proxy}')
        click.echo('Is the proxy server running?')


if __name__ == '__main__':
    cli()
