"""HTTP API for the jotx daemon."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web
from loguru import logger

from .errors import ConfigError
from .models import SearchMode, SearchStatus, SourceType

MAX_CONTENT_CHARS = 100_000


def create_api_app(daemon) -> web.Application:
    """Create the aiohttp application with routes."""
    app = web.Application()
    app['daemon'] = daemon

    app.router.add_post('/capture', handle_capture)
    app.router.add_get('/search', handle_search)
    app.router.add_post('/ask', handle_ask)
    app.router.add_get('/privacy', handle_get_privacy)
    app.router.add_put('/privacy', handle_save_privacy)
    app.router.add_post('/privacy/rules', handle_add_privacy_rule)
    app.router.add_delete('/privacy/rules', handle_remove_privacy_rule)
    app.router.add_get('/settings', handle_get_settings)
    app.router.add_put('/settings', handle_save_settings)
    app.router.add_get('/search-config', handle_get_search_config)
    app.router.add_put('/search-config', handle_save_search_config)
    app.router.add_post('/clean', handle_clean)
    app.router.add_get('/status', handle_status)
    app.router.add_get('/health', handle_health)
    app.router.add_post('/shutdown', handle_shutdown)

    return app


def error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({'error': {'code': code, 'message': message}}, status=status)


async def _json_body(request: web.Request) -> Optional[Dict[str, Any]]:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.lower() in ('1', 'true', 'yes', 'on')


async def handle_capture(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    if data is None:
        return error_response('invalid_request', 'body must be a JSON object', 400)

    content = data.get('content')
    if not isinstance(content, str):
        return error_response('invalid_request', 'content is required', 400)
    if len(content) > MAX_CONTENT_CHARS:
        return error_response('invalid_request', f'content too long (max {MAX_CONTENT_CHARS} chars)', 413)

    source_type = data.get('source_type', 'note')
    if source_type not in {s.value for s in SourceType}:
        return error_response('invalid_request', f'unknown source_type: {source_type}', 400)

    context = data.get('context')
    if context is not None and not isinstance(context, dict):
        return error_response('invalid_request', 'context must be an object', 400)

    outcome = await daemon.capture(content, source_type, context)
    return web.json_response(outcome.to_dict())


async def handle_search(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    query = request.query.get('q')
    if not query:
        return error_response('invalid_request', 'query parameter q is required', 400)

    mode = request.query.get('mode', SearchMode.AUTO.value)
    if mode not in {m.value for m in SearchMode}:
        return error_response('invalid_request', f'unknown mode: {mode}', 400)

    filters: Dict[str, Any] = {
        'sources': request.query.getall('source', None),
        'case_sensitive': _parse_bool(request.query.get('case_sensitive')),
        'fuzzy': _parse_bool(request.query.get('fuzzy')),
        'cwd': request.query.get('cwd'),
    }
    if 'limit' in request.query:
        try:
            filters['limit'] = max(1, int(request.query['limit']))
        except ValueError:
            return error_response('invalid_request', 'limit must be an integer', 400)

    response = await daemon.search(query, mode, filters)
    status = 500 if response.status is SearchStatus.FAILED else 200
    return web.json_response(response.to_dict(), status=status)


async def handle_ask(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    question = data.get('question') if data else None
    if not isinstance(question, str) or not question.strip():
        return error_response('invalid_request', 'question is required', 400)

    timeout = data.get('timeout_s')
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        return error_response('invalid_request', 'timeout_s must be a positive number', 400)

    answer = await daemon.ask(question, timeout=timeout)
    return web.json_response(answer.to_dict())


async def handle_get_privacy(request: web.Request) -> web.Response:
    return web.json_response(request.app['daemon'].get_privacy_config().model_dump())


async def handle_save_privacy(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    if data is None:
        return error_response('invalid_request', 'body must be a JSON object', 400)
    try:
        privacy = daemon.save_privacy_config(data)
    except ConfigError as e:
        return error_response('invalid_config', str(e), 400)
    return web.json_response(privacy.model_dump())


async def _privacy_rule_request(request: web.Request, add: bool) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request)
    if not data or not isinstance(data.get('category'), str) or not isinstance(data.get('pattern'), str):
        return error_response('invalid_request', 'category and pattern are required', 400)
    try:
        if add:
            privacy = daemon.add_privacy_rule(data['category'], data['pattern'])
        else:
            privacy = daemon.remove_privacy_rule(data['category'], data['pattern'])
    except ConfigError as e:
        return error_response('invalid_config', str(e), 400)
    return web.json_response(privacy.model_dump())


async def handle_add_privacy_rule(request: web.Request) -> web.Response:
    return await _privacy_rule_request(request, add=True)


async def handle_remove_privacy_rule(request: web.Request) -> web.Response:
    return await _privacy_rule_request(request, add=False)


async def handle_get_settings(request: web.Request) -> web.Response:
    return web.json_response(request.app['daemon'].get_settings().model_dump())


async def handle_save_settings(request: web.Request) -> web.Response:
    """Partial update: fields not in the body keep their current value."""
    daemon = request.app['daemon']
    data = await _json_body(request)
    if data is None:
        return error_response('invalid_request', 'body must be a JSON object', 400)
    try:
        settings = daemon.save_settings(data)
    except ConfigError as e:
        return error_response('invalid_config', str(e), 400)
    return web.json_response(settings.model_dump())


async def handle_get_search_config(request: web.Request) -> web.Response:
    return web.json_response(request.app['daemon'].get_search_config().model_dump())


async def handle_save_search_config(request: web.Request) -> web.Response:
    """Partial update, like /settings."""
    daemon = request.app['daemon']
    data = await _json_body(request)
    if data is None:
        return error_response('invalid_request', 'body must be a JSON object', 400)
    try:
        search = daemon.save_search_config(data)
    except ConfigError as e:
        return error_response('invalid_config', str(e), 400)
    return web.json_response(search.model_dump())


async def handle_clean(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    data = await _json_body(request) or {}

    before = data.get('before')
    if before is None and data.get('all') is not True:
        return error_response('invalid_request', 'pass "before" (ISO timestamp) or "all": true', 400)

    cutoff = None
    if before is not None:
        try:
            cutoff = datetime.fromisoformat(str(before).replace('Z', '+00:00'))
        except ValueError:
            return error_response('invalid_request', f'invalid timestamp: {before}', 400)
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)

    try:
        deleted = await daemon.clean_data(cutoff)
    except Exception as e:
        logger.error(f"Clean error: {e}")
        return error_response('internal_error', str(e), 500)
    return web.json_response({'deleted': deleted})


async def handle_status(request: web.Request) -> web.Response:
    return web.json_response(await request.app['daemon'].get_full_status())


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})


async def handle_shutdown(request: web.Request) -> web.Response:
    logger.info("Shutdown requested over HTTP")
    request.app['daemon'].request_shutdown()
    return web.json_response({'status': 'stopping'})
