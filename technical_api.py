#!/usr/bin/env python3
"""
Technical Data API — Flask backend serving on-demand WGO technical analysis
for a ticker (levels, returns, moving-average context, turning points).
"""

import datetime
import json
import os
import traceback
from flask import Flask, jsonify, request
from flask_cors import CORS

from market_data import load_settings
from technical_engine import fetch_technical_data, NumpyEncoder


def _valid_symbol(symbol):
    if not isinstance(symbol, str):
        return None
    symbol = symbol.upper().strip()
    if not symbol or len(symbol) > 10:
        return None
    return symbol


def create_app(settings=None):
    """Build the Flask app around an explicit settings dict."""
    app = Flask(__name__)
    CORS(app)
    app.config["WGO_SETTINGS"] = settings if settings is not None else load_settings()

    def _json_response(payload, status=200):
        return app.response_class(
            response=json.dumps(payload, cls=NumpyEncoder),
            status=status,
            mimetype="application/json",
        )

    def _technical_response(raw_symbol):
        symbol = _valid_symbol(raw_symbol)
        if not symbol:
            return jsonify({"status": "error", "error": "Ticker is required"}), 400

        try:
            data = fetch_technical_data(symbol, app.config["WGO_SETTINGS"])
            if data is None:
                return jsonify({
                    "status": "error",
                    "error": f"No data found for '{symbol}'. Check the ticker symbol."
                }), 404
            return _json_response({"status": "success", "ticker": symbol, "data": data})
        except Exception as e:
            print(f"  [ERROR] Technical data for {symbol}: {e}")
            traceback.print_exc()
            return jsonify({"status": "error", "error": str(e)}), 500

    # ------------------------------------------------------------------
    # API Routes
    # ------------------------------------------------------------------
    @app.route("/api/technical/<symbol>")
    def technical_ticker(symbol):
        """Technical data for a single ticker."""
        return _technical_response(symbol)

    @app.route("/api/generate/get-technical-data", methods=["POST"])
    def get_technical_data():
        """Same payload, ticker passed as JSON body {"ticker": "AAPL"}."""
        body = request.get_json(silent=True) or {}
        return _technical_response(body.get("ticker"))

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "success",
            "timestamp": datetime.datetime.now().isoformat(),
        })

    return app


# ------------------------------------------------------------------
# Main
# ------------------------------------------------------------------
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5002))
    app = create_app()

    print(f"\n{'='*60}")
    print("  WGO Technical Data API")
    print("=" * 60)
    print(f"  Endpoint:   http://localhost:{port}/api/technical/<SYMBOL>")
    print(f"  POST:       http://localhost:{port}/api/generate/get-technical-data")
    print(f"  Source:     {app.config['WGO_SETTINGS']['data_source']}")
    print("=" * 60 + "\n")
    app.run(host="0.0.0.0", port=port, debug=False)
