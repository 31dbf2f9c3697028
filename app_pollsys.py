import os
from flask import Flask, jsonify, request
from dotenv import load_dotenv
import pytz

from poll_catalog import get_poll
from ledger import PollError, PostgresLedger, build_ledger, collect_results, format_timestamp, submit_vote

DEFAULT_ADMIN_KEY = "admin123"

# --- Initialization ---
load_dotenv()

app = Flask(__name__)
app.config.update(
    ADMIN_KEY=os.getenv("ADMIN_KEY", DEFAULT_ADMIN_KEY),
    FRONTEND_URL=os.getenv("FRONTEND_URL", "*"),
    DISPLAY_TZ=pytz.timezone(os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata")),
    LEDGER=build_ledger(os.getenv("DATABASE_URL")),
)

if app.config["ADMIN_KEY"] == DEFAULT_ADMIN_KEY:
    app.logger.warning("ADMIN_KEY is not set; using the default admin key")


def error_response(e):
    return jsonify({"success": False, "message": e.message}), e.status


# --- CORS for the frontend ---
@app.after_request
def add_cors_headers(resp):
    if request.path.startswith("/api/"):
        origin = app.config["FRONTEND_URL"]
        resp.headers["Access-Control-Allow-Origin"] = origin
        if origin != "*":
            resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    return resp


# --- Health check ---
@app.route("/")
def health():
    return "CHAAT Poll API is running"


# --- API: Poll definition ---
@app.route("/api/polls/<poll_id>")
def poll_definition(poll_id):
    poll = get_poll(poll_id)
    if not poll:
        return jsonify({"success": False, "message": "Poll not found"}), 404
    return jsonify(poll)


# --- API: Submit both votes at once (one per device) ---
@app.route("/api/submit", methods=["POST"])
def submit():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"success": False, "message": "Invalid request format."}), 400

    try:
        submission = submit_vote(app.config["LEDGER"], data)
    except PollError as e:
        if e.status >= 500:
            app.logger.error(f"Submit vote error: {e}")
        return error_response(e)
    except Exception as e:
        app.logger.error(f"Submit vote error: {e}", exc_info=True)
        return jsonify({"success": False, "message": "Server error"}), 500

    return jsonify({
        "success": True,
        "message": "Thanks for voting!",
        "votedAt": format_timestamp(submission["created_at"], app.config["DISPLAY_TZ"]),
    })


# --- API: Admin results (protected) ---
@app.route("/api/admin/results")
def admin_results():
    try:
        results = collect_results(app.config["LEDGER"], request.args.get("key"),
                                  app.config["ADMIN_KEY"], app.config["DISPLAY_TZ"])
    except PollError as e:
        if e.status == 401:
            app.logger.warning(f"Rejected admin results request from {request.remote_addr}")
        elif e.status >= 500:
            app.logger.error(f"Admin results error: {e}")
        return error_response(e)
    except Exception as e:
        app.logger.error(f"Admin results error: {e}", exc_info=True)
        return jsonify({"success": False, "message": "Server error fetching results."}), 500
    return jsonify(results)


# --- CLI: create tables ---
@app.cli.command("init-db")
def init_db():
    """Create the PostgreSQL tables if they do not exist."""
    ledger = app.config["LEDGER"]
    if not isinstance(ledger, PostgresLedger):
        print("No database configured; nothing to initialise.")
        return
    ledger.init_schema()
    print("Database schema is ready.")


if __name__ == '__main__':
    # Use a WSGI server in production; this is for local runs.
    if isinstance(app.config["LEDGER"], PostgresLedger):
        app.config["LEDGER"].init_schema()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 3001)))
