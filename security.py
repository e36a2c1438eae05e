from flask import current_app


def add_security_headers(response):
    """Add security headers to response"""
    # Responses are JSON only; nothing may be framed, sniffed or scripted
    response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['Referrer-Policy'] = 'no-referrer'

    # Fee balances change with every payment
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'

    if current_app.config.get('PREFERRED_URL_SCHEME') == 'https':
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

    return response


def init_security(app):
    """Initialize security features for the Flask app"""
    app.after_request(add_security_headers)
