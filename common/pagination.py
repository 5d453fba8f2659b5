from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for catalog and transaction-history lists.

    Clients can tune page size with `?page_size=`; values are capped at 200.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
