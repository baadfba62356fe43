#!/usr/bin/env python3
"""Local development server for Domux Python functions.

This server mimics the Firebase Functions emulator endpoints so the web
client can be pointed at a plain Flask process.

Usage:
    cd functions
    source venv/bin/activate
    python serve_local.py

This will start a Flask server on port 5002 that handles
POST /<project>/europe-west1/<function> for every Cloud Function in main.py.
"""

import os

# Set environment for local development
os.environ.setdefault('FUNCTIONS_EMULATOR', 'true')
os.environ.setdefault('USE_FIREBASE_EMULATORS', 'true')
os.environ.setdefault('GCLOUD_PROJECT', 'domux-dev')
os.environ.setdefault('FIRESTORE_EMULATOR_HOST', '127.0.0.1:8081')
os.environ.setdefault('FIREBASE_STORAGE_EMULATOR_HOST', '127.0.0.1:9199')

from flask import Flask, request, jsonify
from flask_cors import CORS

# Import the main module after setting env vars
from main import (
    create_session,
    get_session,
    update_session,
    update_session_context,
    generate_estimate,
    suggest_project_title,
    finalize_project,
    apply_project_edits,
    normalize_image,
)

PROJECT_ID = os.environ['GCLOUD_PROJECT']
REGION = 'europe-west1'

FUNCTIONS = {
    'create_session': create_session,
    'get_session': get_session,
    'update_session': update_session,
    'update_session_context': update_session_context,
    'generate_estimate': generate_estimate,
    'suggest_project_title': suggest_project_title,
    'finalize_project': finalize_project,
    'apply_project_edits': apply_project_edits,
    'normalize_image': normalize_image,
}

app = Flask(__name__)
CORS(app)


class MockRequest:
    """Mock Firebase request object to wrap Flask request."""

    def __init__(self, flask_request):
        self._request = flask_request
        self._json_data = None
        self.method = flask_request.method
        self.headers = dict(flask_request.headers)

    def get_json(self, force=False):
        if self._json_data is None:
            self._json_data = self._request.get_json(force=force) or {}
        return self._json_data


def wrap_firebase_function(firebase_fn):
    """Wrap a Firebase function to work with Flask."""
    def wrapper():
        mock_req = MockRequest(request)
        response = firebase_fn(mock_req)
        # Firebase Response has response_value, status, headers
        return response.get_data(), response.status_code, dict(response.headers)
    return wrapper


@app.route(f'/{PROJECT_ID}/{REGION}/<function_name>', methods=['POST', 'OPTIONS'])
def handle_function(function_name):
    firebase_fn = FUNCTIONS.get(function_name)
    if firebase_fn is None:
        return jsonify({'success': False, 'error': {'code': 'NOT_FOUND', 'message': f'Unknown function {function_name}'}}), 404
    return wrap_firebase_function(firebase_fn)()


# Health check
@app.route('/health', methods=['GET'])
def health():
    return jsonify({'status': 'ok', 'service': 'domux-python-functions'})


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5002))
    print(f"""
╔════════════════════════════════════════════════════════════════╗
║  Domux Python Functions - Local Development Server             ║
╠════════════════════════════════════════════════════════════════╣
║                                                                ║
║  Server running on: http://127.0.0.1:{port}                     ║
║                                                                ║
║  Endpoints:                                                    ║
║  • POST /{PROJECT_ID}/{REGION}/<function>
║    {', '.join(FUNCTIONS)}
║                                                                ║
╚════════════════════════════════════════════════════════════════╝
""")
    app.run(host='127.0.0.1', port=port, debug=True, threaded=True)
