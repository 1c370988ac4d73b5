from typing import Any, Dict, Tuple

from flask import Flask, jsonify, request

from cofund_sale import config
from cofund_sale import sale_store
from cofund_sale.deploy import Deployment
from cofund_sale.errors import SaleError, UnknownRoundError
from cofund_sale.leaderboard import build_leaderboard, failed_round_ids
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

MAX_LEADERBOARD_LIMIT = 1000


def get_cors_headers(origin: str) -> Dict[str, str]:
    """Get CORS headers with origin validation."""
    allowed = config.CORS_ALLOWED_ORIGINS
    allowed_origin = "*"
    if "*" not in allowed:
        if origin in allowed:
            allowed_origin = origin
        else:
            allowed_origin = allowed[0] if allowed else "null"

    return {
        'Access-Control-Allow-Origin': allowed_origin,
        'Access-Control-Allow-Methods': 'GET, OPTIONS',
        'Access-Control-Allow-Headers': 'Content-Type',
        'Access-Control-Max-Age': '3600',
        'Access-Control-Allow-Credentials': 'false'
    }


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def create_app(deployment: Deployment) -> Flask:
    """
    Builds the read-only HTTP API over a deployed sale.

    Routes:
        GET /sale                                      global state and current round
        GET /rounds                                    every round
        GET /rounds/<id>                               one round
        GET /rounds/<id>/contributions/<address>       one contributor's record
        GET /leaderboard?limit=&exclude_failed=        top contributors
    """
    app = Flask(__name__)
    sale = deployment.sale

    def respond(body: Any, status: int = 200) -> Tuple[Any, int]:
        return jsonify(body), status

    @app.after_request
    def add_cors_headers(response):
        """Adds CORS headers to every response, preflight included."""
        response.headers.update(get_cors_headers(request.headers.get('Origin', '*')))
        return response

    @app.route('/sale', methods=['GET'])
    def get_sale():
        return respond(sale.sale_state().model_dump(mode='json'))

    @app.route('/rounds', methods=['GET'])
    def get_rounds():
        return respond([r.model_dump(mode='json') for r in sale.list_rounds()])

    @app.route('/rounds/<int:round_id>', methods=['GET'])
    def get_round(round_id: int):
        try:
            return respond(sale.get_round(round_id).model_dump(mode='json'))
        except UnknownRoundError as e:
            return respond({"message": str(e)}, 404)

    @app.route('/rounds/<int:round_id>/contributions/<address>', methods=['GET'])
    def get_contribution(round_id: int, address: str):
        try:
            view = sale.round_view(round_id, address)
            return respond(view.model_dump(mode='json'))
        except UnknownRoundError as e:
            return respond({"message": str(e)}, 404)
        except SaleError as e:
            logger.warning(f"Rejected contribution query for round {round_id}, address {address}: {e}")
            return respond({"message": str(e)}, 400)

    @app.route('/leaderboard', methods=['GET'])
    def get_leaderboard():
        try:
            limit = int(request.args.get('limit', config.LEADERBOARD_SIZE))
        except (TypeError, ValueError):
            return respond({"message": "limit must be an integer"}, 400)
        if limit <= 0 or limit > MAX_LEADERBOARD_LIMIT:
            return respond({"message": f"limit must be between 1 and {MAX_LEADERBOARD_LIMIT}"}, 400)

        excluded = []
        if _parse_bool(request.args.get('exclude_failed', 'false')):
            excluded = failed_round_ids(sale)
        rows = build_leaderboard(deployment.events, limit=limit, excluded_rounds=excluded)
        return respond([r.model_dump() for r in rows])

    return app


# --- Main Execution (for running the Flask app directly) ---
if __name__ == '__main__':
    port = config.API_PORT
    logger.info(f"Starting sale HTTP API on port {port}...")
    # Consider using a production server like gunicorn instead of Flask's dev server
    create_app(sale_store.load_or_deploy()).run(host='0.0.0.0', port=port)
