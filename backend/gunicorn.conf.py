# backend/gunicorn.conf.py
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"
workers = int(os.environ.get('WEB_CONCURRENCY', '2'))
# create-subscription espera al gateway + polling de la factura
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '60'))
loglevel = os.environ.get('LOG_LEVEL', 'info')
capture_output = True   # stdout/stderr van a los logs
accesslog = "-"
errorlog = "-"
