"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py init-db
    flask --app run.py create-user admin admin
    flask --app run.py --debug run

"""

from approvals import create_app

# WSGI application object. `flask run` and WSGI servers (gunicorn run:app) look for `app`.
app = create_app()

if __name__ == "__main__":
    # dev only; use `flask run` or a WSGI server instead
    app.run(debug=True)
