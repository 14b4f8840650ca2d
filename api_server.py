# api_server.py
import io
import json
import logging
import os

from flask import Flask, jsonify, render_template, request, send_file, url_for

from penalty_engine import (
    DEFAULT_FORMAT,
    InvalidParameters,
    PenaltyEngine,
    build_share_query,
    export_schedule_to_excel_bytes,
    format_currency,
    format_long_date,
    format_schedule_rows,
    parse_loan_parameters,
    plain_number,
    process_request,
)

# --- Configuration ---
HOST = os.environ.get('HOST', '0.0.0.0')
PORT = int(os.environ.get('PORT', '5000'))
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

# --- Flask Application Setup ---
app = Flask(__name__)
app.add_template_filter(plain_number, "plain_number")
engine = PenaltyEngine()

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


@app.route('/')
@app.route('/calculator')
def calculator():
    """
    Renders the return schedule page. Query parameters fall back to defaults
    silently, so any link produces a page.
    """
    params = parse_loan_parameters(request.args)
    query = build_share_query(params)
    error = None
    rows = []
    try:
        rows = format_schedule_rows(engine.generate_schedule(params), DEFAULT_FORMAT)
    except InvalidParameters as e:
        app.logger.info("Rejected parameters %s: %s", query, e)
        error = str(e)

    return render_template(
        'schedule.html',
        params=params,
        rows=rows,
        error=error,
        principal_display=format_currency(params.principal, DEFAULT_FORMAT),
        maturity_display=format_long_date(params.maturity_date),
        share_url=f"{url_for('calculator', _external=True)}?{query}",
        export_url=f"{url_for('export')}?{query}",
    )


@app.route('/export')
def export():
    params = parse_loan_parameters(request.args)
    try:
        rows = engine.generate_schedule(params)
    except InvalidParameters as e:
        return jsonify({"error": str(e)}), 400

    excel_bytes, filename = export_schedule_to_excel_bytes(params, rows, DEFAULT_FORMAT)
    app.logger.info("Exported %d rows as %s", len(rows), filename)
    return send_file(io.BytesIO(excel_bytes), mimetype=XLSX_MIMETYPE,
                     as_attachment=True, download_name=filename)


@app.route('/calculate', methods=['POST'])
def calculate():
    """
    Handles schedule and export requests from API clients.
    """
    if not request.is_json:
        return jsonify({"error": "Invalid Content-Type. Must be application/json."}), 400

    try:
        payload = request.get_json(silent=True) or {}
        script = payload.get('script', '')
        data_dict = payload.get('data', {})
        app.logger.debug("SCRIPT RECEIVED: %s DATA RECEIVED: %s", script, data_dict)

        response_dict = json.loads(process_request(script, data_dict))
        if 'received_data' in response_dict:
            # engine failure rather than a rejected request
            return jsonify(response_dict), 500
        if 'error' in response_dict:
            return jsonify(response_dict), 400
        return jsonify(response_dict)

    except Exception as e:
        app.logger.exception("Server calculation error")
        return jsonify({
            "error": f"Python Server Calculation Error: {str(e)}",
        }), 500


if __name__ == '__main__':
    app.run(host=HOST, port=PORT)
