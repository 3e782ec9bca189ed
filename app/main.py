"""Main Quart application for the document Q&A service."""
import uuid

import httpx
from quart import Quart, current_app, jsonify, request
import structlog

from app import config
from app.errors import (
    ConfigurationError,
    UnsupportedFileTypeError,
    UpstreamError,
    ValidationError,
)
from app.logs import configure_logging
from app.rag.extract import extract_text, guess_mime_type
from app.rag.registry import sort_newest_first
from app.services import RAGServices, build_services

logger = structlog.get_logger()


def _services() -> RAGServices:
    return current_app.extensions["rag"]


def create_app(services: RAGServices = None) -> Quart:
    """Create the Quart app.

    Args:
        services: Prebuilt services (tests inject these). When omitted they
            are built from configuration before the app starts serving and
            closed when it stops.
    """
    configure_logging()

    app = Quart(__name__)
    # Leave room for multipart framing around the file itself
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES + 64 * 1024

    if services is not None:
        app.extensions["rag"] = services

    @app.before_serving
    async def startup():
        if "rag" not in app.extensions:
            app.extensions["rag"] = build_services()
            app.extensions["rag_owned"] = True
        logger.info("app_started", backend=config.VECTOR_BACKEND)

    @app.after_serving
    async def shutdown():
        if app.extensions.pop("rag_owned", False):
            await app.extensions.pop("rag").aclose()
        logger.info("app_stopped")

    _register_routes(app)
    _register_error_handlers(app)
    return app


def _register_routes(app: Quart) -> None:
    @app.route("/api/upload", methods=["POST"])
    async def upload():
        """Upload a file and index it.

        Expects multipart form data with a ``file`` field.

        Returns JSON:
        {
            "success": true,
            "documentId": "uuid",
            "chunkCount": 3,
            "message": "..."
        }
        """
        files = await request.files
        file = files.get("file")

        if file is None or not file.filename:
            return jsonify({"error": "No file provided"}), 400

        data = file.read()
        if len(data) > config.MAX_UPLOAD_BYTES:
            return jsonify({"error": "File too large"}), 413

        # Browsers send octet-stream for unknown types such as .md
        mime_type = file.mimetype
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = guess_mime_type(file.filename) or mime_type

        logger.info(
            "upload_received",
            filename=file.filename,
            mime_type=mime_type,
            size=len(data),
        )

        text = extract_text(data, mime_type)

        document_id = str(uuid.uuid4())
        result = await _services().pipeline.ingest(text, file.filename, document_id)

        return jsonify({
            "success": True,
            "documentId": result.document_id,
            "chunkCount": result.chunk_count,
            "message": "Document uploaded and processed successfully",
        })

    @app.route("/api/chat", methods=["POST"])
    async def chat():
        """Answer a question from the indexed documents.

        Expects JSON body:
        {
            "message": "user question",
            "history": [{"role": "user", "content": "..."}, ...],  // optional
            "topK": 5,  // optional
            "documentId": "uuid"  // optional, restrict to one document
        }

        Returns JSON:
        {
            "message": "assistant response text",
            "sources": ["file.pdf", ...]
        }
        """
        data = await request.get_json(silent=True)

        if not isinstance(data, dict):
            return jsonify({"error": "Message is required"}), 400

        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            return jsonify({"error": "Message is required"}), 400

        history = data.get("history")
        if not isinstance(history, list):
            history = []

        top_k = data.get("topK")
        if top_k is not None and (not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1):
            return jsonify({"error": "topK must be a positive integer"}), 400

        metadata_filter = None
        document_id = data.get("documentId")
        if isinstance(document_id, str) and document_id:
            metadata_filter = {"documentId": {"$eq": document_id}}

        logger.info(
            "chat_request_received",
            message_length=len(message),
            history_length=len(history),
            filtered=metadata_filter is not None,
        )

        answer = await _services().pipeline.answer(
            message,
            top_k=top_k,
            history=history,
            metadata_filter=metadata_filter,
        )
        return jsonify(answer.to_dict())

    @app.route("/api/documents", methods=["GET"])
    async def list_documents():
        """List indexed documents, newest first.

        Returns JSON:
        {
            "documents": [
                {"documentId": "uuid", "source": "a.pdf", "createdAt": "...", "chunkCount": 3},
                ...
            ]
        }
        """
        documents = await _services().registry.list_documents()
        return jsonify({"documents": [d.to_dict() for d in sort_newest_first(documents)]})

    @app.route("/api/documents/<document_id>", methods=["DELETE"])
    async def delete_document(document_id: str):
        """Delete every chunk of a document.

        Returns JSON:
        {
            "success": true,
            "deletedCount": 3,
            "message": "..."
        }
        """
        deleted_count = await _services().registry.delete_document(document_id)
        return jsonify({
            "success": True,
            "deletedCount": deleted_count,
            "message": f"Deleted {deleted_count} vectors for document",
        })

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check if app can serve requests.

        Checks:
        - Gemini is reachable
        - Required models are available
        - The vector index exists with the embedding dimension

        Never creates or recreates the index.
        """
        services = _services()
        checks = {
            "status": "healthy",
            "gemini": False,
            "models": False,
            "index": None,
        }
        errors = []

        try:
            models = await services.llm.list_models()
            checks["gemini"] = True

            required = {services.llm.chat_model, services.llm.embedding_model}
            missing = sorted(required - set(models))
            if missing:
                errors.append(f"Missing models: {', '.join(missing)}")
            else:
                checks["models"] = True
        except (ConfigurationError, UpstreamError, httpx.HTTPError) as e:
            errors.append(str(e))

        try:
            stats = await services.gateway.check()
            checks["index"] = stats.to_dict()
        except (ConfigurationError, UpstreamError) as e:
            errors.append(str(e))

        if errors:
            logger.error("health_check_failed", errors=errors)
            checks["status"] = "unhealthy"
            checks["error"] = "; ".join(errors)

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200


def _register_error_handlers(app: Quart) -> None:
    @app.errorhandler(UnsupportedFileTypeError)
    async def unsupported_file_type(error: UnsupportedFileTypeError):
        return jsonify({"error": error.message}), 415

    @app.errorhandler(ValidationError)
    async def validation_error(error: ValidationError):
        logger.info("request_rejected", error=error.message)
        return jsonify({"error": error.message}), 400

    @app.errorhandler(ConfigurationError)
    async def configuration_error(error: ConfigurationError):
        logger.error("service_not_configured", error=error.message)
        return jsonify({"error": "Service is not configured", "detail": error.message}), 500

    @app.errorhandler(UpstreamError)
    async def upstream_error(error: UpstreamError):
        logger.error("upstream_service_failed", stage=error.stage, error=error.message)
        return jsonify({
            "error": "A backing service is unavailable. Please try again later.",
            "stage": error.stage,
        }), 503

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(413)
    async def too_large(error):
        return jsonify({"error": "File too large"}), 413

    @app.errorhandler(500)
    async def internal_error(error):
        """Handle 500 errors."""
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500


app = create_app()


if __name__ == "__main__":
    # For development - serve with hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
