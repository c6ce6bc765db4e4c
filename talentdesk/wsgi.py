"""
WSGI config for talentdesk project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "talentdesk.settings")

application = get_wsgi_application()
