import os
import sys
import time
import logging

from flask import Flask, request, jsonify

from config import load_settings
from errors import PipelineError, ModelLoadError, ConfigurationError
from findings import load_label_table
from inference import load_engine
from cases import CaseStore
import pipeline

logger = logging.getLogger(__name__)


def create_app(engine, label_table, store=None, settings=None):
    """Build the Flask app around an already loaded engine and label table."""
    app = Flask(__name__)
    store = store if store is not None else CaseStore()
    request_timeout = settings.request_timeout if settings is not None else None

    # --- FLASK ROUTES ---
    @app.route('/')
    def index():
        """Health check."""
        return jsonify({
            'status': 'ok',
            'model': os.path.basename(engine.source) if engine.source else engine.kind,
            'cases': len(store),
        })

    @app.route('/api/analysis/queue', methods=['GET'])
    def get_queue():
        """Return all analysed cases, newest first."""
        return jsonify([case.to_dict() for case in store.list_cases()])

    @app.route('/api/analysis', methods=['POST'])
    def analyze():
        """Handle the image upload and run the triage pipeline."""
        file = request.files.get('file')
        data = file.read() if file is not None else b""
        if not data:
            logger.warning("Rejected upload without file content")
            return jsonify({'message': 'No file.'}), 400

        deadline = time.monotonic() + request_timeout if request_timeout else None
        try:
            case = pipeline.analyze(data, engine, label_table, store, deadline=deadline)
        except PipelineError as e:
            logger.error("Analysis of %s failed: %s", file.filename or "upload", e.message)
            return jsonify({'message': e.message}), 500
        except Exception as e:
            logger.exception("Unexpected error while analysing %s", file.filename or "upload")
            return jsonify({'message': str(e)}), 500

        return jsonify(case.to_dict())

    return app


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # --- MODEL LOADING ---
    try:
        label_table = load_label_table(settings.labels_path)
        engine = load_engine(settings.model_path, settings.model_input_name, settings.model_arch)
        label_table.validate(engine.output_size)
    except (ModelLoadError, ConfigurationError) as e:
        logger.error("Cannot start: %s", e.message)
        sys.exit(1)

    app = create_app(engine, label_table, settings=settings)
    try:
        app.run(host=settings.host, port=settings.port, threaded=True)
    finally:
        engine.close()


if __name__ == '__main__':
    main()
