"""config URL Configuration

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/stable/topics/http/urls/
"""
import json
import logging

from django.contrib import admin
from django.urls import path
from django.views.decorators.csrf import csrf_exempt
from graphene_django.views import GraphQLView

from .views import health_view

# Customize admin site
admin.site.site_header = "Arc Payroll Admin"
admin.site.site_title = "Arc Payroll Admin Portal"
admin.site.index_title = "Welcome to Arc Payroll Administration"

logger = logging.getLogger(__name__)


class LoggingGraphQLView(GraphQLView):
    def dispatch(self, request, *args, **kwargs):
        if request.method == 'POST':
            try:
                body = json.loads(request.body or b'{}')
                operation = body.get('operationName') or (body.get('query') or '')[:80]
                logger.info("GraphQL operation: %s user=%s", operation, getattr(request, 'user', None))
                # Signed transactions are large and not useful in logs
                if 'submitPayrollRun' not in (body.get('query') or ''):
                    logger.debug("GraphQL variables: %s", body.get('variables', {}))
            except ValueError as e:
                logger.error("Error parsing GraphQL request: %s", str(e))
        return super().dispatch(request, *args, **kwargs)


urlpatterns = [
    path('admin/', admin.site.urls),
    path('graphql/', csrf_exempt(LoggingGraphQLView.as_view(graphiql=True))),
    path('health/', health_view, name='health'),
]
