"""
Flask application that reads a Key Vault secret with the credential resolver
and shows which identity was used.
"""
import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify, render_template

from .errors import NoCredentialAvailable, SecretRetrievalFailed
from .keyvault_functions import retrieve_secret
from .resolver import CredentialResolver

logger = logging.getLogger(__name__)


def describe_resolution(resolver):
    resolution = resolver.last_resolution
    if resolution is None:
        return None
    return {
        "source": str(resolution.source),
        "principal_type": str(resolution.principal.kind),
        "principal_name": resolution.principal.name,
        "tenant_id": resolution.principal.tenant_id,
    }


def create_app(resolver=None):
    load_dotenv()

    app = Flask(__name__)
    app.secret_key = os.urandom(24)
    app.config["SECRET_NAME"] = os.environ.get("KEY_VAULT_SECRET_NAME", "secret")
    app.extensions["credential_resolver"] = resolver or CredentialResolver.from_environment()

    def fetch():
        resolver = app.extensions["credential_resolver"]
        # Drop any resolution left on this thread by an earlier request
        resolver.clear()
        record = retrieve_secret(app.config["SECRET_NAME"], credential=resolver)
        return record, describe_resolution(resolver)

    @app.route("/")
    def index():
        """Display the secret and the principal used to read it."""
        try:
            record, principal = fetch()
            return render_template("index.html", secret=record, principal=principal)
        except NoCredentialAvailable as e:
            logger.warning("No credential available: %s", e.message)
            return render_template("index.html", error=e.message, failures=e.failures), 503
        except SecretRetrievalFailed as e:
            logger.warning("%s", e)
            principal = describe_resolution(app.extensions["credential_resolver"])
            return render_template("index.html", error=str(e), principal=principal), 502
        except ValueError as e:
            logger.error("Configuration error: %s", e)
            return render_template("index.html", error=f"Configuration error: {e}"), 500

    @app.route("/api/secret")
    def secret_api():
        """Return the masked secret and principal as JSON."""
        try:
            record, principal = fetch()
            return jsonify({
                "name": record.name,
                "value": record.masked(),
                "version": record.version,
                "principal": principal,
            })
        except NoCredentialAvailable as e:
            return jsonify({
                "error": "no credential available",
                "attempts": [{"source": str(f.kind), "reason": f.reason} for f in e.failures],
            }), 503
        except SecretRetrievalFailed as e:
            return jsonify({
                "error": str(e),
                "status_code": e.status_code,
                "principal": describe_resolution(app.extensions["credential_resolver"]),
            }), 502
        except ValueError as e:
            return jsonify({"error": f"Configuration error: {e}"}), 500

    @app.route("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("azure").setLevel(logging.WARNING)
    print(" * Running on http://localhost:5000")
    create_app().run(debug=False, host="0.0.0.0", port=5000)
