#!/usr/bin/env python3
"""
Toolbox Control Server
Flask backend for starting/stopping IB download jobs and browsing Lean data snapshots
"""

from datetime import date, datetime
import argparse
import logging
import os

from flask import Flask, request, jsonify
from flask_cors import CORS

from ib_toolbox.config import BrokerageConfiguration
from ib_toolbox.data_download.ib_client import InteractiveBrokersDataSource
from ib_toolbox.data_download.models import DownloadRequest, SnapshotRequest
from ib_toolbox.download_service import DownloadService
from ib_toolbox.exceptions import ValidationError
from ib_toolbox.job_manager import JobManager
from ib_toolbox.job_store import JobStore
from ib_toolbox.logging_setup import REQUEST_LOGGER_NAME, setup_logging

logger = logging.getLogger(__name__)
request_logger = logging.getLogger(REQUEST_LOGGER_NAME)


def _parse_date(value, field_name, errors):
    if not value:
        errors.append(f"{field_name} is required.")
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        errors.append(f"{field_name} must be an ISO date (YYYY-MM-DD), got '{value}'.")
        return None


def _parse_int(value, default, field_name, errors):
    if value in (None, ''):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"{field_name} must be an integer, got '{value}'.")
        return default


def download_request_from_payload(payload):
    """Build a DownloadRequest from a JSON body, raising ValidationError with every problem found"""
    errors = []
    start = _parse_date(payload.get('from'), 'from', errors)
    end = _parse_date(payload.get('to'), 'to', errors)
    if errors:
        raise ValidationError(errors)

    return DownloadRequest(
        symbol=payload.get('symbol') or '',
        security_type=payload.get('security_type') or 'equity',
        resolution=payload.get('resolution') or '',
        start=start,
        end=end,
        data_dir=payload.get('data_dir') or '',
        exchange=payload.get('exchange') or 'SMART',
        currency=payload.get('currency') or 'USD',
    )


def snapshot_request_from_args(args):
    errors = []
    snapshot_request = SnapshotRequest(
        symbol=args.get('symbol', ''),
        resolution=args.get('resolution', 'minute'),
        security_type=args.get('security_type', 'equity'),
        data_directory=args.get('data_dir', ''),
        page_number=_parse_int(args.get('page'), 1, 'page', errors),
        page_size=_parse_int(args.get('page_size'), 100, 'page_size', errors),
    )
    if 'start' in args:
        snapshot_request.start_date = _parse_date(args.get('start'), 'start', errors)
    if 'end' in args:
        snapshot_request.end_date = _parse_date(args.get('end'), 'end', errors)
    if errors:
        raise ValidationError(errors)
    return snapshot_request


def create_app(service: DownloadService) -> Flask:
    app = Flask(__name__)
    CORS(app)

    # Request logging middleware
    @app.before_request
    def log_request_info():
        """Log request information"""
        request_logger.info(f"REQUEST START: {request.method} {request.url}")
        request_logger.info(f"Remote addr: {request.remote_addr}")
        if request.is_json:
            request_logger.info({'event': 'json_payload', 'payload': request.get_json(silent=True)})
        elif request.args:
            request_logger.info(f"Query params: {dict(request.args)}")

    @app.after_request
    def log_response_info(response):
        """Log response information"""
        request_logger.info(f"RESPONSE: {response.status_code} - {response.status}")
        if response.content_length:
            request_logger.info(f"Response size: {response.content_length} bytes")
        return response

    @app.route('/api/jobs', methods=['POST'])
    def start_job():
        """Start a new download job"""
        logger.info("🚀 API: /api/jobs endpoint called")
        payload = request.get_json(silent=True) or {}
        try:
            download_request = download_request_from_payload(payload)
        except ValidationError as exc:
            logger.warning(f"❌ API: Rejected download request: {exc}")
            return jsonify({"errors": exc.errors}), 400

        job = service.start_download_job(download_request)
        logger.info(f"✅ API: Started job {job.job_id} for {job.symbol} ({job.resolution})")
        return jsonify(job.to_dict()), 202

    @app.route('/api/jobs', methods=['GET'])
    def list_jobs():
        """List known download jobs"""
        return jsonify({"jobs": [job.to_dict() for job in service.list_jobs()]})

    @app.route('/api/jobs/<job_id>', methods=['GET'])
    def get_job(job_id):
        job = service.get_job(job_id)
        if job is None:
            return jsonify({"error": f"Job '{job_id}' not found"}), 404
        return jsonify(job.to_dict())

    @app.route('/api/jobs/<job_id>/stop', methods=['POST'])
    def stop_job(job_id):
        """Stop a running download job"""
        logger.info(f"🛑 API: stop requested for job {job_id}")
        job = service.stop_download_job(job_id)
        if job is None:
            return jsonify({"error": f"Job '{job_id}' not found"}), 404
        return jsonify(job.to_dict())

    @app.route('/api/snapshot', methods=['GET'])
    def get_snapshot():
        """Load a page of Lean data from disk"""
        try:
            snapshot_request = snapshot_request_from_args(request.args)
            page = service.load_snapshot(snapshot_request)
        except ValidationError as exc:
            return jsonify({"errors": exc.errors}), 400
        return jsonify(page.to_dict())

    @app.route('/api/health', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({"status": "healthy", "timestamp": datetime.now().isoformat()})

    return app


def build_default_service(environ=None) -> DownloadService:
    """Wire the service from the brokerage settings in the environment plus IB_CLIENT_ID and IB_TOOLBOX_JOBS"""
    environ = os.environ if environ is None else environ
    configuration = BrokerageConfiguration.from_environment(environ)
    for problem in configuration.validate():
        logger.warning(f"⚠️ Brokerage configuration: {problem}")

    data_source = InteractiveBrokersDataSource(
        host=configuration.gateway_host,
        port=configuration.gateway_port,
        client_id=int(environ.get('IB_CLIENT_ID', '1')),
    )
    jobs_path = environ.get('IB_TOOLBOX_JOBS')
    job_manager = JobManager(JobStore(jobs_path) if jobs_path else JobStore())
    return DownloadService(job_manager, data_source)


def main(argv=None):
    parser = argparse.ArgumentParser(description="IB toolbox HTTP server")
    parser.add_argument('--host', default='0.0.0.0')
    parser.add_argument('--port', type=int, default=8080)
    parser.add_argument('--log-dir', default=None)
    parser.add_argument('--log-level', default=os.environ.get('LOG_LEVEL', 'info'))
    args = parser.parse_args(argv)

    log_dir = setup_logging(args.log_dir, args.log_level)
    print("🚀 Starting IB Toolbox Server...")
    print(f"🌐 Access the API at: http://localhost:{args.port}/api/health")
    print(f"📁 Log files located in: {log_dir}")
    logger.info("🚀 IB Toolbox Server starting up")

    app = create_app(build_default_service())
    app.run(debug=False, host=args.host, port=args.port, use_reloader=False)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
