# app.py
# -----------------------------
# PantryGenie Flask Application
# -----------------------------

from __future__ import annotations

import json
import logging
import queue
from dataclasses import dataclass

import markdown
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    url_for,
)
from markupsafe import Markup, escape
from werkzeug.exceptions import HTTPException

from auth import AuthError, AuthProvider, SessionManager, UserSession, create_auth_provider, login_required
from classifier import ClassificationError, Classifier
from config import Settings, load_settings
from db import InventoryStore, create_inventory_store, validate_item_name
from recipes import (
    RecipeError,
    RecipeProvider,
    RecipeService,
    clean_recipe_text,
    create_provider,
    provider_key_missing,
)
from search import filter_inventory
from storage import ImageStore, LocalImageStore, create_image_store

INVALID_INGREDIENTS = "Invalid request: 'ingredients' must be an array."
STREAM_KEEPALIVE_SECONDS = 15.0

bp = Blueprint("pantry", __name__)


@dataclass
class PantryServices:
    settings: Settings
    sessions: SessionManager
    store: InventoryStore
    images: ImageStore
    classifier: Classifier
    recipes: RecipeService


def _services() -> PantryServices:
    return current_app.extensions["pantry"]


def _user() -> UserSession:
    user = _services().sessions.current_user()
    if user is None:  # login_required ran first
        abort(401)
    return user


# ===== Session =====
def _auth_form(mode: str):
    sessions = _services().sessions
    if request.method == "POST":  # form submitted
        email = request.form.get("email", "")  # email
        password = request.form.get("password", "")  # password
        try:
            if mode == "signup":
                sessions.sign_up(email, password, request.form.get("confirm_password", ""))
            else:
                sessions.sign_in(email, password)
        except AuthError as e:
            return render_template("sign_in.html", mode=mode, email=email, error=str(e))
        return redirect(url_for("pantry.index"))  # signed in

    if sessions.current_user() is not None:  # already signed in
        return redirect(url_for("pantry.index"))
    return render_template("sign_in.html", mode=mode, email="", error=None)


# route: sign in
@bp.route("/sign-in", methods=["GET", "POST"])
def sign_in():
    return _auth_form("signin")


# route: sign up
@bp.route("/sign-up", methods=["GET", "POST"])
def sign_up():
    return _auth_form("signup")


# route: sign out
@bp.route("/logout")
def logout():
    _services().sessions.sign_out()  # listeners tear down live queries
    return redirect(url_for("pantry.sign_in"))


# ===== Inventory =====
# route: pantry list (initial filter from ?q=)
@bp.route("/")
@login_required
def index():
    svc = _services()  # wired services
    uid = _user().uid  # user id
    query = request.args.get("q", "")  # initial filter, refined client-side
    try:
        items = svc.store.list_items(uid)  # full list
    except Exception as e:
        current_app.logger.error(f"Inventory load error: {e}")
        flash("Could not load your pantry. Please try again.", "error")  # message
        items = []
    return render_template(  # show list
        "index.html",
        items=filter_inventory(items, query),
        total=len(items),
        query=query,
        debounce_ms=svc.settings.search_debounce_ms,
        show_search=True,
    )


def _mutate(description: str, action) -> None:
    """Run an inventory mutation; report failures to the user instead of dropping them."""
    try:
        action()
    except ValueError as e:
        flash(str(e), "error")  # bad name or file
    except Exception as e:
        current_app.logger.error(f"{description} error: {e}")
        flash(f"Could not {description.lower()}. Please try again.", "error")


# route: add item (optional photo)
@bp.route("/items", methods=["POST"])
@login_required
def add_item():
    svc = _services()  # wired services
    uid = _user().uid  # user id
    name = request.form.get("name", "")  # item name
    upload = request.files.get("image")  # optional photo

    def action():
        item_name = validate_item_name(name)  # reject before uploading
        image_url = None
        if upload and upload.filename:  # photo attached
            if not (upload.mimetype or "").startswith("image/"):
                raise ValueError("Only image files can be attached to an item.")
            image_url = svc.images.upload(upload.filename, upload.read(), upload.mimetype)
        svc.store.add(uid, item_name, image_url)  # increment or create

    _mutate("Add item", action)
    return redirect(url_for("pantry.index"))  # back to list


# route: +1 on an existing item
@bp.route("/items/increment", methods=["POST"])
@login_required
def increment_item():
    svc = _services()
    uid = _user().uid
    name = request.form.get("name", "")  # item name
    _mutate("Add item", lambda: svc.store.add(uid, name))
    return redirect(url_for("pantry.index"))


# route: -1, deleting at the last unit
@bp.route("/items/remove", methods=["POST"])
@login_required
def remove_item():
    svc = _services()
    uid = _user().uid
    name = request.form.get("name", "")  # item name
    _mutate("Remove item", lambda: svc.store.remove(uid, name))
    return redirect(url_for("pantry.index"))


# route: rename an item
@bp.route("/items/rename", methods=["POST"])
@login_required
def rename_item():
    svc = _services()
    uid = _user().uid
    name = request.form.get("name", "")  # current name
    new_name = request.form.get("new_name", "")  # new name

    def action():
        if svc.store.get_item(uid, name) is None:  # gone since the page loaded
            raise ValueError(f"{name} is no longer in your pantry.")
        svc.store.rename(uid, name, new_name)

    _mutate("Rename item", action)
    return redirect(url_for("pantry.index"))


# route: live inventory (server-sent events)
@bp.route("/inventory/stream")
@login_required
def inventory_stream():
    """Server-sent events: one full inventory snapshot per change."""
    store = _services().store
    user = _user()
    updates: queue.Queue = queue.Queue()  # snapshots from the store's thread
    subscription = store.subscribe(
        user.uid,
        updates.put,
        on_close=lambda: updates.put(None),  # sign-out marker
        tag=user.session_id,  # closed with this browser session only
    )
    current_app.logger.info(
        f"Live query opened for {user.email} ({store.subscription_count(user.uid)} open)"
    )

    def generate():
        try:
            while True:
                try:
                    items = updates.get(timeout=STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"  # keep proxies from closing the stream
                    continue
                if items is None:  # signed out
                    yield "event: signed-out\ndata: {}\n\n"
                    break
                yield f"data: {json.dumps([i.to_dict() for i in items])}\n\n"
        finally:
            subscription.unsubscribe()  # client went away or signed out

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# route: locally stored photos
@bp.route("/uploads/<path:filename>")
def uploaded_file(filename: str):
    images = _services().images
    if not isinstance(images, LocalImageStore):
        abort(404)
    return send_from_directory(images.upload_dir.resolve(), filename)  # serve file


# ===== Photo classification =====
# route: classify an uploaded or captured photo
@bp.route("/scan", methods=["POST"])
@login_required
def scan():
    photo = request.files.get("photo")  # uploaded or captured image
    if not photo or not photo.filename:  # nothing chosen
        flash("Choose or capture a photo first.", "error")
        return redirect(url_for("pantry.index"))

    try:
        predictions = _services().classifier.classify(photo.read())  # blocks while analyzing
    except ClassificationError as e:
        current_app.logger.error(f"Classification error: {e}")
        flash(str(e), "error")
        return redirect(url_for("pantry.index"))

    if not predictions:  # below the confidence floor
        flash("Nothing was recognised in that photo.", "info")
        return redirect(url_for("pantry.index"))
    return render_template("predictions.html", predictions=predictions)  # let the user pick


# route: add the predictions the user ticked
@bp.route("/scan/confirm", methods=["POST"])
@login_required
def confirm_predictions():
    svc = _services()
    uid = _user().uid
    labels = [label for label in request.form.getlist("labels") if label.strip()]  # ticked labels
    if not labels:
        flash("No items selected.", "info")
        return redirect(url_for("pantry.index"))

    added = 0
    for label in labels:
        try:
            svc.store.add(uid, label)  # increment or create
            added += 1
        except ValueError as e:
            flash(f"{label}: {e}", "error")
        except Exception as e:
            current_app.logger.error(f"Add predicted item error: {e}")
            flash(f"Could not add {label}. Please try again.", "error")
    if added:
        flash(f"Added {added} item{'s' if added != 1 else ''} to your pantry.", "success")
    return redirect(url_for("pantry.index"))


# ===== Recipes =====
# route: recipe suggestions page
@bp.route("/recipes", methods=["GET", "POST"])
@login_required
def recipes():
    svc = _services()
    uid = _user().uid
    suggestions = None  # generated recipes

    try:
        ingredients = [item.name for item in svc.store.list_items(uid)]  # pantry names
    except Exception as e:
        current_app.logger.error(f"Inventory load error: {e}")
        flash("Could not load your pantry. Please try again.", "error")
        return redirect(url_for("pantry.index"))

    if request.method == "POST":  # "get" and "more" both replace the batch
        if not ingredients:
            flash("Add some items to your pantry first.", "error")
        else:
            try:
                suggestions = svc.recipes.suggest(ingredients)  # one provider call
            except RecipeError as e:
                flash(f"Error fetching recipes: {e}", "error")

    return render_template("recipes.html", recipes=suggestions, ingredients=ingredients)  # show


# route: recipe suggestions as JSON
@bp.route("/api/get-recipes", methods=["POST"], provide_automatic_options=False)
def get_recipes():
    data = request.get_json(silent=True)  # None on a non-JSON body
    ingredients = data.get("ingredients") if isinstance(data, dict) else None
    if not isinstance(ingredients, list):  # validate
        current_app.logger.error(INVALID_INGREDIENTS)
        return jsonify(error=INVALID_INGREDIENTS), 400

    try:
        suggestions = _services().recipes.suggest([str(i) for i in ingredients])
    except RecipeError as e:
        return jsonify(error=str(e)), 500
    return jsonify(recipes=suggestions)  # always a list


# ===== Template helpers =====
def recipe_html(text: str) -> Markup:
    """Cleaned recipe text rendered as HTML (escaped before markdown)."""
    return Markup(markdown.markdown(str(escape(clean_recipe_text(text)))))


# ===== Global Error Handlers =====
def _wants_plain_error() -> bool:
    return request.path.startswith(("/api/", "/uploads/", "/static/", "/inventory/stream"))


def method_not_allowed(e):
    """405 with the allowed methods; JSON for API routes."""
    if not request.path.startswith("/api/"):
        return e
    response = jsonify(error=f"Method {request.method} Not Allowed")
    response.status_code = 405
    response.headers["Allow"] = ", ".join(sorted(e.valid_methods or []))
    return response


def page_not_found(e):
    """Handle 404 errors with a friendly message."""
    if _wants_plain_error():
        return e
    flash("Page not found. Redirecting to home.", "error")
    return redirect(url_for("pantry.index"))


def handle_exception(e):
    """Catch-all error handler for unhandled exceptions."""
    if isinstance(e, HTTPException):
        return e
    current_app.logger.error(f"Unhandled exception: {e}")
    if _wants_plain_error():
        return jsonify(error="Internal server error"), 500
    flash("Something went wrong. Please try again.", "error")
    return redirect(url_for("pantry.index"))


# ===== Application factory =====
def create_app(
    settings: Settings | None = None,
    *,
    auth_provider: AuthProvider | None = None,
    store: InventoryStore | None = None,
    images: ImageStore | None = None,
    classifier: Classifier | None = None,
    recipe_provider: RecipeProvider | None = None,
) -> Flask:
    """Build the app; any service can be swapped out (tests use the local ones)."""
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    app = Flask(__name__)
    app.secret_key = settings.secret_key

    images = images or create_image_store(settings)
    store = store or create_inventory_store(settings, images)
    sessions = SessionManager(auth_provider or create_auth_provider(settings))

    if recipe_provider is None:
        if provider_key_missing(settings.recipes):
            app.logger.warning(
                f"⚠️  Warning: API key for recipe provider {settings.recipes.provider!r} "
                "not set. Recipe suggestions will not work."
            )
        recipe_provider = create_provider(settings.recipes)

    def on_auth_state_changed(user: UserSession | None, previous: UserSession | None) -> None:
        if user is None and previous is not None:
            # this browser session only
            closed = store.unsubscribe_all(previous.uid, tag=previous.session_id)
            app.logger.info(f"Signed out {previous.email}; closed {closed} live queries")

    sessions.on_auth_state_changed(on_auth_state_changed)

    app.extensions["pantry"] = PantryServices(
        settings=settings,
        sessions=sessions,
        store=store,
        images=images,
        classifier=classifier or Classifier.from_config(settings.classifier),
        recipes=RecipeService(recipe_provider),
    )

    app.register_blueprint(bp)
    app.add_template_filter(recipe_html, "recipe_html")
    app.add_template_filter(clean_recipe_text, "clean_recipe")
    app.register_error_handler(405, method_not_allowed)
    app.register_error_handler(404, page_not_found)
    app.register_error_handler(Exception, handle_exception)
    return app


# run the app if executed directly
if __name__ == "__main__":  # entrypoint
    settings = load_settings()
    # start development server (production should use gunicorn/uwsgi)
    create_app(settings).run(debug=True, host="127.0.0.1", port=settings.port, threaded=True)
