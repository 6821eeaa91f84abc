from app.peptrack import create_app

app = create_app()
