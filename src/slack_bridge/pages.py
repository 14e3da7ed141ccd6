from __future__ import annotations

from html import escape

_TEMPLATE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{title}</title>
    <style>
      body {{ font-family: sans-serif; margin: 0; background: #f5f5f5; }}
      main {{ max-width: 32rem; margin: 15vh auto; padding: 2rem; background: #fff;
              border-radius: 6px; text-align: center; }}
      h1 {{ font-size: 1.5rem; }}
    </style>
  </head>
  <body>
    <main>
      <h1>{title}</h1>
      <p>{message}</p>
    </main>
  </body>
</html>
"""


def html_message(title: str, message: str) -> str:
    return _TEMPLATE.format(title=escape(title), message=escape(message))
