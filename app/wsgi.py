from app.panotify import create_app

app = create_app()
