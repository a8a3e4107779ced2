from billing_engine.routes.api_keys import bp as api_keys_bp
from billing_engine.routes.external import bp as external_bp
from billing_engine.routes.items import bp as items_bp
from billing_engine.routes.stripe_webhook import bp as stripe_webhook_bp
from billing_engine.routes.usage import bp as usage_bp


def register_routes(app):
    app.register_blueprint(stripe_webhook_bp)
    app.register_blueprint(usage_bp)
    app.register_blueprint(api_keys_bp)
    app.register_blueprint(external_bp)
    app.register_blueprint(items_bp)

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok", "version": app.config.get("APP_VERSION")}
