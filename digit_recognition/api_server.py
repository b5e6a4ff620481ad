"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition
training.

This module provides endpoints for:
- Creating digit recognizers with a training configuration
- Training them in the background with per-iteration progress updates
  via WebSockets
- Predicting digit confidences for MNIST test images
- Persisting trained networks to/from SQLite

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent greenlets for background training
- SQLite for network persistence
"""

import os
import sys
import time
import uuid
import logging
from typing import Dict, Any, Optional

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from digit_recognition import mnist_loader
from digit_recognition.mnist_parser import MNISTFormatError
from digit_recognition.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network
)
from digit_recognition.network import TrainingProgress
from digit_recognition.recognizer import DigitRecognizer, TrainingConfiguration

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: quiet third-party loggers, keep ours at INFO
    - In development: show socketio/engineio logs too
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digit_recognition').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

def progress_interval() -> int:
    """Read PROGRESS_EVERY from the environment; it must be at least 1."""
    interval = int(os.getenv('PROGRESS_EVERY', '10'))
    if interval < 1:
        raise ValueError(f"PROGRESS_EVERY must be at least 1, got {interval}")
    return interval


# Emit a progress update every this many iterations
PROGRESS_EVERY = progress_interval()

# Seconds a completed or failed job stays queryable before cleanup drops it
JOB_RETENTION = float(os.getenv('JOB_RETENTION', '3600'))

# Seconds between runs of the background job cleanup
CLEANUP_INTERVAL = float(os.getenv('CLEANUP_INTERVAL', '600'))

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Recognizers currently loaded in memory: {network_id: recognizer_info}
active_recognizers: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Greenlets of running jobs, kept apart so job info stays JSON-serializable
training_tasks: Dict[str, gevent.Greenlet] = {}

# MNIST dataset, loaded once by load_mnist_data()
mnist_data: Optional[mnist_loader.MNISTData] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST dataset into the module state.

    Raises:
        FileNotFoundError: If a data file is missing
        MNISTFormatError: If a data file is malformed
    """
    global mnist_data

    logger.info("Loading MNIST data...")
    try:
        mnist_data = mnist_loader.load_data()
    except (FileNotFoundError, MNISTFormatError) as e:
        logger.error(f"Error loading MNIST data: {e}")
        raise

    logger.info(
        f"Data loaded: {mnist_data.training.count} training, "
        f"{mnist_data.testing.count} test"
    )


def reload_saved_networks() -> None:
    """Restore every saved network into memory as a recognizer."""
    saved_networks = list_saved_networks()

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue

        try:
            configuration = TrainingConfiguration(**(net_info['configuration'] or {}))
            recognizer = DigitRecognizer(
                mnist_data.training,
                configuration=configuration,
                network=net
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping incompatible network {network_id}: {e}")
            continue

        active_recognizers[network_id] = {
            'recognizer': recognizer,
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _require_data():
    if mnist_data is None:
        logger.error("MNIST data not loaded")
        return jsonify({'error': 'MNIST data not available'}), 503
    return None


def _describe(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    recognizer = info['recognizer']
    return {
        'network_id': network_id,
        'architecture': recognizer.network.sizes,
        'configuration': recognizer.configuration.to_dict(),
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'status': 'in_memory'
    }


def parse_configuration(data: Dict[str, Any]) -> TrainingConfiguration:
    """
    Build a TrainingConfiguration from a request body.

    Raises:
        ValueError: If a field has the wrong type or value
    """
    defaults = TrainingConfiguration()

    max_items = data.get('max_training_items', defaults.max_training_items)
    iterations = data.get('iterations', defaults.iterations)
    learning_rate = data.get('learning_rate', defaults.learning_rate)
    hidden_layers = data.get('hidden_layers', list(defaults.hidden_layers))

    if not isinstance(max_items, int) or isinstance(max_items, bool):
        raise ValueError('max_training_items must be a positive integer')
    if not isinstance(iterations, int) or isinstance(iterations, bool):
        raise ValueError('iterations must be a positive integer')
    if not isinstance(learning_rate, (int, float)) or isinstance(learning_rate, bool):
        raise ValueError('learning_rate must be a positive number')
    if not isinstance(hidden_layers, list) or not all(
        isinstance(size, int) and not isinstance(size, bool) for size in hidden_layers
    ):
        raise ValueError('hidden_layers must be a list of positive integers')

    return TrainingConfiguration(
        max_training_items=max_items,
        iterations=iterations,
        learning_rate=float(learning_rate),
        hidden_layers=tuple(hidden_layers)
    )


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'data_loaded': mnist_data is not None,
        'active_networks': len(active_recognizers),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new digit recognizer.

    Request body (all optional):
        {
            'max_training_items': 5000,
            'iterations': 300,
            'learning_rate': 0.06,
            'hidden_layers': [10]
        }

    Returns:
        JSON with network_id, architecture, configuration and status
    """
    error = _require_data()
    if error:
        return error

    data = request.get_json(silent=True) or {}
    try:
        configuration = parse_configuration(data)
    except ValueError as e:
        logger.warning(f"Invalid configuration requested: {data}")
        return jsonify({'error': str(e)}), 400

    network_id = str(uuid.uuid4())
    recognizer = DigitRecognizer(mnist_data.training, configuration=configuration)
    active_recognizers[network_id] = {
        'recognizer': recognizer,
        'trained': False,
        'accuracy': None
    }

    logger.info(
        f"Created network {network_id} with architecture {recognizer.network.sizes}"
    )

    return jsonify({
        'network_id': network_id,
        'architecture': recognizer.network.sizes,
        'configuration': configuration.to_dict(),
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a recognizer in the background.

    Progress is pushed as 'training_update' events, followed by
    'training_complete' or 'training_error'.

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_recognizers:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    recognizer = active_recognizers[network_id]['recognizer']
    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'iterations': recognizer.configuration.iterations
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"{recognizer.configuration}"
    )

    def on_progress(progress: TrainingProgress) -> None:
        job = training_jobs[job_id]
        job['status'] = 'training'
        job['progress'] = progress.progress

        final = progress.iteration == progress.total_iterations
        if progress.iteration % PROGRESS_EVERY and not final:
            return

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'iteration': progress.iteration,
            'total_iterations': progress.total_iterations,
            'accuracy': progress.accuracy,
            'loss': progress.loss,
            'elapsed_time': progress.elapsed_time,
            'progress': progress.progress,
            'correct': progress.correct,
            'total': progress.total
        })

    task = recognizer.train_async(on_progress)
    training_tasks[job_id] = task
    task.link_value(lambda greenlet: finish_training_job(network_id, job_id))
    task.link_exception(lambda greenlet: fail_training_job(network_id, job_id, greenlet.exception))

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def finish_training_job(network_id: str, job_id: str) -> None:
    """Record a finished run, save the network and notify clients."""
    training_tasks.pop(job_id, None)
    info = active_recognizers.get(network_id)
    if info is None:
        logger.warning(f"Network {network_id} was deleted during training job {job_id}")
        training_jobs.pop(job_id, None)
        return

    recognizer = info['recognizer']
    try:
        accuracy = recognizer.evaluate(mnist_data.testing)

        info['trained'] = True
        info['accuracy'] = accuracy

        save_network(
            recognizer.network,
            network_id,
            trained=True,
            accuracy=accuracy,
            configuration=recognizer.configuration.to_dict()
        )
    except Exception as e:
        logger.exception(f"Could not finish training job {job_id}: {e}")
        fail_training_job(network_id, job_id, e)
        return

    job = training_jobs[job_id]
    job['status'] = 'completed'
    job['accuracy'] = accuracy
    job['progress'] = 100
    job['finished_at'] = time.time()

    logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

    socketio.emit('training_complete', {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'completed',
        'accuracy': float(accuracy),
        'progress': 100
    })


def fail_training_job(network_id: str, job_id: str, error: BaseException) -> None:
    """Record a failed run and notify clients."""
    training_tasks.pop(job_id, None)
    logger.error(f"Training failed for job {job_id}: {error!r}")

    job = training_jobs.get(job_id)
    if job is not None:
        job['status'] = 'failed'
        job['error'] = str(error)
        job['finished_at'] = time.time()

    socketio.emit('training_error', {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'failed',
        'error': str(error)
    })


# ============================================================================
# JOB CLEANUP
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_finished_training_jobs(max_age: Optional[float] = None) -> int:
    """
    Remove completed or failed training jobs from memory.

    Jobs are dropped once they have been finished for at least ``max_age``
    seconds (``JOB_RETENTION`` by default), so clients can still read the
    final status shortly after a run ends. Pending and running jobs are kept.

    Returns:
        Number of jobs removed
    """
    if max_age is None:
        max_age = JOB_RETENTION

    now = time.time()
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
        and now - job_info.get('finished_at', now) >= max_age
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s) from memory")

    return len(jobs_to_remove)


def cleanup_training_jobs_task() -> None:
    """Background loop that runs the job cleanup every CLEANUP_INTERVAL seconds."""
    while True:
        try:
            cleanup_finished_training_jobs()
        except Exception as e:
            logger.exception(f"Error during training job cleanup: {e}")
        gevent.sleep(CLEANUP_INTERVAL)


def start_cleanup_task() -> None:
    """
    Start the background job cleanup.

    This function is idempotent - calling it multiple times has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info(f"Starting cleanup task (every {CLEANUP_INTERVAL:.0f}s)")
    gevent.spawn(cleanup_training_jobs_task)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all networks, in memory and saved to disk."""
    in_memory = [_describe(nid, info) for nid, info in active_recognizers.items()]

    saved_only = []
    for net in list_saved_networks():
        if net['network_id'] not in active_recognizers:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    if network_id not in active_recognizers:
        return jsonify({'error': 'Network not found'}), 404
    return jsonify(_describe(network_id, active_recognizers[network_id])), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = active_recognizers.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(
        f"Deleted network {network_id}: memory={deleted_from_memory}, "
        f"disk={deleted_from_disk}"
    )

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/<network_id>/predictions/<int:index>', methods=['GET'])
def get_prediction(network_id: str, index: int):
    """
    Predict the digit confidences of one MNIST test image.

    Returns JSON with every digit's confidence, the highest digit and the
    actual label.
    """
    if network_id not in active_recognizers:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    error = _require_data()
    if error:
        return error

    testing = mnist_data.testing
    if index >= testing.count:
        return jsonify({
            'error': f'Example index must be below {testing.count}'
        }), 404

    sample = testing[index]
    outcome = active_recognizers[network_id]['recognizer'].digit_predictions(sample)
    highest = outcome.highest_digit

    return jsonify({
        'network_id': network_id,
        'example_index': index,
        'actual_digit': sample.label,
        'predicted_digit': highest.value,
        'confidence': highest.confidence,
        'digits': outcome.to_list()
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))

    try:
        load_mnist_data()
    except (FileNotFoundError, MNISTFormatError):
        logger.error("Cannot start without the MNIST dataset")
        sys.exit(1)

    reload_saved_networks()

    # Start background cleanup task
    start_cleanup_task()

    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
