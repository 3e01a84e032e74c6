"""Offline page served when a navigation fails and nothing is cached."""

# OFFLINE PAGE
# Shown instead of a browser error page when neither the requested page nor
# the root shell page is available. Reloads itself so the app comes back as
# soon as the origin does.

OFFLINE_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Creatrid - Offline</title>
<style>
body{margin:0;height:100vh;display:flex;align-items:center;justify-content:center;
font-family:system-ui,sans-serif;background:#0b0b10;color:#e6e6f0}
div{text-align:center}h1{font-size:2rem;margin-bottom:.5rem}p{opacity:.7}
</style>
</head>
<body>
<div>
<h1>You are offline</h1>
<p>This page has not been saved for offline use yet.<br>It will reload when the connection is back.</p>
</div>
<script>setTimeout(function(){location.reload()},5000)</script>
</body>
</html>
"""
