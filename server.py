#!/usr/bin/env python3
"""
Read endpoints for manifests and processing status.

Viewers identify themselves with a `user` query parameter and a `token`
signed with AUTH_KEY over (timestamp, user id).
"""

import hmac
import json
import logging
import time
from functools import wraps

from bottle import Bottle, HTTPResponse, Response, request, response

from depot.config import DepotConfig
from depot.context import DepotContext
from depot.exceptions import AccessDenied, ResourceNotFound, ResourceNotReady

IIIF_CONTENT_TYPE = 'application/ld+json;profile="http://iiif.io/api/presentation/3/context.json"'

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type',
}

log = logging.getLogger('depot.server')


class TokenException(Exception):
    """Raised when an auth token is invalid for some reason."""
    pass


def get_timestamp():
    """Return an integer timestamp with one second resolution for
    the current moment.
    """
    return int(time.time())


def generate_token(key, timestamp, user_id):
    """Generate the auth token for the given user id and timestamp."""
    timestamp = str(timestamp)
    mac = hmac.new(key.encode(), timestamp.encode() + user_id.encode(), digestmod='sha256')
    return ':'.join((mac.hexdigest(), timestamp))


def validate_token(config, token_in, user_id):
    """Validate the token for the given user id. Checks that the token is
    within the time tolerance and that its signature matches.
    """
    if config.auth_key is None:
        raise TokenException("No auth key configured, tokens cannot be checked.")
    if not token_in:
        raise TokenException("Auth token is missing.")
    if ':' not in token_in:
        raise TokenException("Auth token is malformed.")

    mac_in, timestr = token_in.split(':', 1)
    try:
        timestamp = int(timestr)
    except ValueError:
        raise TokenException("Auth token is malformed.")

    if config.time_tolerance is not None:
        current_time = get_timestamp()
        if not abs(current_time - timestamp) < config.time_tolerance:
            raise TokenException(f"Auth token timestamp out of range: {timestamp} vs {current_time}")

    if not hmac.compare_digest(token_in, generate_token(config.auth_key, timestamp, user_id)):
        raise TokenException("Auth token is invalid.")


def allow_cross_origin(func):
    """Decorate a view function to allow cross domain access."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            result = func(*args, **kwargs)
        except HTTPResponse as r:
            for name, value in CORS_HEADERS.items():
                r.set_header(name, value)
            raise
        target = result if isinstance(result, Response) else response
        for name, value in CORS_HEADERS.items():
            target.set_header(name, value)
        return result
    return wrapper


def json_error(status, message):
    return HTTPResponse(
        status=status,
        body=json.dumps({'error': message}),
        headers={'Content-Type': 'application/json'},
    )


def create_app(service, config):
    """Build the Bottle application around a ResourceService."""
    app = Bottle()

    def viewer_id():
        """Return the authenticated viewer, or None for anonymous requests."""
        user_id = request.query.get('user')
        if not user_id:
            return None
        if config.auth_key is None:
            # Identity cannot be verified without a key
            log.debug(f"Ignoring user {user_id}, no auth key configured")
            return None
        try:
            validate_token(config, request.query.get('token'), user_id)
        except TokenException as e:
            log.info(f"Rejected token for user {user_id}: {e}")
            raise json_error(403, 'Invalid token')
        return user_id

    @app.route('/iiif/manifests/<resource_id>/manifest.json')
    @allow_cross_origin
    def manifest(resource_id):
        try:
            document = service.get_manifest(resource_id, viewer_id())
        except ResourceNotFound:
            raise json_error(404, 'Resource not found')
        except AccessDenied:
            raise json_error(403, 'Access denied')
        except ResourceNotReady:
            raise json_error(503, 'Resource is not ready yet')
        response.content_type = IIIF_CONTENT_TYPE
        return json.dumps(document, ensure_ascii=False)

    @app.route('/iiif/manifests/<resource_id>/manifest.json', method='OPTIONS')
    @allow_cross_origin
    def manifest_options(resource_id):
        response.status = 204
        return ''

    @app.route('/api/resources/<resource_id>/status')
    def status(resource_id):
        try:
            service.check_access(resource_id, viewer_id())
            return service.get_status(resource_id)
        except ResourceNotFound:
            raise json_error(404, 'Resource not found')
        except AccessDenied:
            raise json_error(403, 'Access denied')

    @app.route('/')
    def main_page():
        return 'IIIF depot'

    return app


def main():
    from bottle import run

    config = DepotConfig.from_env()
    logging.basicConfig(
        level=logging.getLevelName(config.log_level),
        format='%(asctime)s [%(levelname)s] %(message)s',
    )
    errors = config.validate()
    if errors:
        for error in errors:
            log.error(error)
        return 1

    ctx = DepotContext.build(config)
    ctx.store.create_tables()
    log.info("running server...")
    run(app=create_app(ctx.service, config), host='0.0.0.0', port=config.port)
    log.info("Exiting.")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
