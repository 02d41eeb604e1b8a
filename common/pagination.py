from django.conf import settings
from rest_framework.pagination import LimitOffsetPagination

from common.responses import success_response


class StandardResultsSetPagination(LimitOffsetPagination):
    """Shared limit/offset pagination for list endpoints.

    Clients tune the window with `?limit=` and `?offset=`; the limit is capped
    to keep payload sizes predictable.
    """

    default_limit = getattr(settings, "POS_SALES_LIST_DEFAULT_LIMIT", 50)
    max_limit = getattr(settings, "POS_SALES_LIST_MAX_LIMIT", 500)

    def get_paginated_response(self, data):
        return success_response(data=data, count=self.count)

    def get_paginated_response_schema(self, schema):
        return {
            "type": "object",
            "required": ["success", "data", "count"],
            "properties": {
                "success": {"type": "boolean"},
                "count": {"type": "integer"},
                "data": schema,
            },
        }
