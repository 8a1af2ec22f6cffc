from .models import HTTPResponse, RequestLine


class FallbackResponder:
    """
    Answers non-CONNECT requests without contacting an origin server.

    The redirect is a stand-in for real forwarding: the Location header is
    the request target exactly as received and the connection is closed
    after the single response.
    """

    def redirect(self, request_line: RequestLine) -> HTTPResponse:
        return HTTPResponse.create_redirect(request_line.target)

    def bad_request(self) -> HTTPResponse:
        return HTTPResponse.create_error(400, "Bad Request")

    def too_large(self) -> HTTPResponse:
        return HTTPResponse.create_error(431, "Request Header Fields Too Large")
