# fleak/extension/extensions.py
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO

db = SQLAlchemy()

# async_mode is chosen per app in create_app (gevent in production, threading in tests)
socketio = SocketIO()
