"""
Web routes module for the MailSync service.

Provider webhooks and a small JSON API for operators: manual sync triggers,
learning jobs, account health and scheduler diagnostics.
"""

import base64
import binascii
import hmac
import json
import logging
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from mailsync.email.errors import UnknownAccountError
from mailsync.email.models import LearningOptions, ProviderKind

# Configure logging
logger = logging.getLogger(__name__)


class WebRoutes:
    """
    Registers the Flask routes of the MailSync service.

    Handlers stay thin: validation and dispatch live in the real-time manager,
    the orchestrator and the learning pipeline reached through ``app_manager``.
    """

    def __init__(self, app: Flask, config: Any, app_manager: Any) -> None:
        """
        Initialize web routes.

        Args:
            app: Flask application instance
            config: Application configuration
            app_manager: MailSyncApplication (or any object exposing the same components)
        """
        self.app = app
        self.config = config
        self.app_manager = app_manager
        self._register_routes()
        logger.info("Web routes initialized")

    def _register_routes(self) -> None:
        """Register Flask routes."""

        @self.app.route('/webhooks/graph', methods=['POST'])
        def graph_webhook():
            """Microsoft Graph change notifications and subscription validation."""
            validation_token = request.args.get('validationToken')
            if validation_token is not None:
                logger.info("Answering Graph subscription validation request")
                return Response(validation_token, status=200, mimetype='text/plain')

            payload = request.get_json(silent=True)
            if not isinstance(payload, dict):
                return jsonify({'error': 'expected a JSON notification collection'}), 400
            summary = self.app_manager.realtime_manager.handle_notification(ProviderKind.GRAPH, payload)
            logger.debug(f"Graph notification batch handled: {summary}")
            # Rejected items are acknowledged as well
            return '', 202

        @self.app.route('/webhooks/gmail', methods=['POST'])
        def gmail_webhook():
            """Gmail watch notifications delivered as Pub/Sub push messages."""
            expected = self.config.GMAIL_PUSH_VERIFICATION_TOKEN
            if expected and not hmac.compare_digest(request.args.get('token', ''), expected):
                logger.warning("Rejected Gmail push with a bad verification token")
                return jsonify({'error': 'invalid token'}), 403

            data = decode_pubsub_message(request.get_json(silent=True))
            if data is None:
                return jsonify({'error': 'malformed Pub/Sub envelope'}), 400
            summary = self.app_manager.realtime_manager.handle_notification(ProviderKind.GMAIL, data)
            logger.debug(f"Gmail notification handled: {summary}")
            return '', 204

        @self.app.route('/api/sync/<account_id>', methods=['POST'])
        def trigger_sync(account_id: str):
            """Run a sync now, or dispatch it in the background with ``background=true``."""
            body = request.get_json(silent=True) or {}
            try:
                if _as_bool(body.get('background')):
                    folders = [body['folder']] if body.get('folder') else None
                    dispatched = self.app_manager.realtime_manager.trigger(account_id, folders)
                    return jsonify({'account_id': account_id, 'dispatched': dispatched}), 202
                max_messages = body.get('max_messages')
                result = self.app_manager.run_sync(
                    account_id,
                    folder=body.get('folder'),
                    max_messages=int(max_messages) if max_messages is not None else None,
                    full_resync=_as_bool(body.get('full_resync')),
                )
            except UnknownAccountError as exc:
                return jsonify({'error': str(exc)}), 404
            except (TypeError, ValueError) as exc:
                return jsonify({'error': f'invalid request: {exc}'}), 400
            return jsonify(result.to_dict()), 200

        @self.app.route('/api/learning/jobs', methods=['POST'])
        def submit_learning_job():
            body = request.get_json(silent=True) or {}
            account_id = body.get('account_id')
            user_id = body.get('user_id')
            if not account_id or not user_id:
                return jsonify({'error': 'account_id and user_id are required'}), 400
            try:
                options = learning_options_from(body, self.config)
                job_id = self.app_manager.submit_learning_job(account_id, user_id, options)
            except UnknownAccountError as exc:
                return jsonify({'error': str(exc)}), 404
            except (TypeError, ValueError) as exc:
                return jsonify({'error': f'invalid request: {exc}'}), 400
            return jsonify({'job_id': job_id}), 202

        @self.app.route('/api/learning/jobs/<job_id>', methods=['GET'])
        def learning_job_status(job_id: str):
            job = self.app_manager.learning_pipeline.status(job_id)
            if job is None:
                return jsonify({'error': f'unknown job {job_id}'}), 404
            return jsonify(job.to_dict()), 200

        @self.app.route('/api/accounts/<account_id>/status', methods=['GET'])
        def account_status(account_id: str):
            try:
                return jsonify(self.app_manager.orchestrator.account_status(account_id)), 200
            except UnknownAccountError as exc:
                return jsonify({'error': str(exc)}), 404

        @self.app.route('/api/scheduler/status', methods=['GET'])
        def scheduler_status():
            return jsonify(self.app_manager.realtime_manager.scheduler_status()), 200


def decode_pubsub_message(envelope: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return the JSON payload of a Pub/Sub push envelope, or ``None`` if malformed."""
    if not isinstance(envelope, dict):
        return None
    message = envelope.get('message')
    if not isinstance(message, dict) or not message.get('data'):
        return None
    try:
        data = json.loads(base64.b64decode(message['data']).decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning(f"Could not decode Pub/Sub message {message.get('messageId')}: {exc}")
        return None
    return data if isinstance(data, dict) else None


def learning_options_from(body: Dict[str, Any], config: Any) -> LearningOptions:
    """Build LearningOptions from a request body, falling back to configured defaults."""
    days_back = body.get('days_back', config.LEARNING_DAYS_BACK)
    return LearningOptions(
        force_relearn=_as_bool(body.get('force_relearn')),
        batch_size=int(body.get('batch_size', config.LEARNING_BATCH_SIZE)),
        max_messages=int(body.get('max_messages', config.LEARNING_MAX_MESSAGES)),
        days_back=int(days_back) if days_back else None,
    )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)
