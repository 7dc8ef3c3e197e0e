"""
QR Attendance Gate - Main Application

Entry point for running the attendance API with the Flask development
server. Production deployments import ``create_app`` from ``qrattend.web``
and serve it with a WSGI server.
"""

import os

from qrattend.web import create_app

app = create_app(os.environ.get('FLASK_ENV'))

if __name__ == '__main__':
    app.run(
        host=os.environ.get('HOST', '0.0.0.0'),
        port=int(os.environ.get('PORT', 5000)),
        debug=app.config['DEBUG'],
        use_reloader=False
    )
