"""
HTML rendering of the directory listing.

Every name that reaches the page comes from the filesystem and may contain
anything printable, so the environment autoescapes and link targets go
through the ``q`` filter.
"""

import urllib.parse
from typing import List

from jinja2 import Environment, DictLoader, select_autoescape

from simpletransfer.common.constants import APP_TITLE
from simpletransfer.listing import DirectoryEntry, format_size, join_relpath, parent_relpath, build_breadcrumbs


LISTING_TEMPLATE = '''<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <title>{{ title }}</title>
  <style>
    :root{
      --bg: #0b1220;
      --border: rgba(255,255,255,.12);
      --text: rgba(255,255,255,.92);
      --muted: rgba(255,255,255,.68);
      --muted2: rgba(255,255,255,.55);
      --accent: #7c5cff;
      --accent2: #00d4ff;
      --shadow: 0 10px 30px rgba(0,0,0,.35);
      --radius: 16px;
      --font: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, Helvetica, Arial;
    }
    *{ box-sizing:border-box; }
    body{
      margin:0;
      font-family: var(--font);
      color: var(--text);
      background:
        radial-gradient(1200px 600px at 10% 0%, rgba(124,92,255,.35), transparent 50%),
        radial-gradient(900px 600px at 90% 10%, rgba(0,212,255,.25), transparent 55%),
        var(--bg);
      min-height:100vh;
    }
    .wrap{ max-width: 980px; margin: 0 auto; padding: 22px 16px 44px; }
    .topbar{
      position: sticky; top:0; z-index:10;
      padding: 14px 0 10px;
      backdrop-filter: blur(10px);
      background: linear-gradient(to bottom, rgba(11,18,32,.75), rgba(11,18,32,.25));
    }
    .header{ display:flex; align-items:flex-start; justify-content:space-between; gap:12px; }
    .title{ display:flex; flex-direction:column; gap:6px; }
    .title h1{ margin:0; font-size: 18px; font-weight: 700; }
    .chip{
      display:inline-flex; align-items:center; gap:8px;
      padding: 6px 10px; border-radius: 999px;
      border: 1px solid var(--border); background: rgba(255,255,255,.04);
      color: var(--muted); font-size: 12px; white-space: nowrap;
    }
    .grid{ display:grid; grid-template-columns: 1.2fr .8fr; gap: 14px; align-items: start; }
    @media (max-width: 860px){ .grid{ grid-template-columns: 1fr; } }
    .card{
      border: 1px solid var(--border);
      background: linear-gradient(180deg, rgba(255,255,255,.06), rgba(255,255,255,.035));
      border-radius: var(--radius); box-shadow: var(--shadow); overflow:hidden;
    }
    .card .hd{
      padding: 14px 14px 10px; border-bottom: 1px solid rgba(255,255,255,.08);
      display:flex; align-items:center; justify-content:space-between; gap:10px;
    }
    .card .hd .h{ font-weight: 650; font-size: 13px; }
    .card .bd{ padding: 14px; }
    .crumbs{ display:flex; flex-wrap:wrap; gap:6px; align-items:center; }
    .crumbs a, .crumbs span{
      font-size: 12px; color: var(--muted); text-decoration:none;
      padding: 6px 10px; border-radius: 999px;
      border: 1px solid rgba(255,255,255,.10); background: rgba(255,255,255,.03);
    }
    .crumbs .sep{ border:none; background:transparent; padding:0; margin:0 2px; color: var(--muted2); }
    .btn{
      display:inline-flex; align-items:center; justify-content:center; gap:8px;
      border: 1px solid rgba(255,255,255,.16); background: rgba(255,255,255,.06);
      color: var(--text); padding: 10px 12px; border-radius: 12px;
      font-weight: 650; font-size: 13px; text-decoration:none; cursor:pointer;
    }
    .btn.primary{ border: none; background: linear-gradient(135deg, var(--accent), var(--accent2)); color: #07101f; }
    .btn.small{ padding: 8px 10px; border-radius: 10px; font-size: 12px; }
    .search{
      width: 100%; padding: 10px 12px; border-radius: 12px;
      border: 1px solid rgba(255,255,255,.14); background: rgba(0,0,0,.18);
      color: var(--text); outline:none; font-size: 13px;
    }
    .list{ display:flex; flex-direction:column; gap:8px; }
    .item{
      display:flex; align-items:center; justify-content:space-between; gap:10px;
      padding: 10px; border-radius: 14px;
      border: 1px solid rgba(255,255,255,.10); background: rgba(255,255,255,.03);
    }
    .meta{ display:flex; flex-direction:column; gap:2px; min-width:0; }
    .name{ font-weight: 650; font-size: 13px; white-space:nowrap; overflow:hidden; text-overflow:ellipsis; max-width: 520px; }
    .sub{ font-size: 12px; color: var(--muted); display:flex; gap:10px; flex-wrap:wrap; }
    .tag{ font-size: 11px; color: var(--muted2); }
    .drop{
      border: 1px dashed rgba(255,255,255,.22); background: rgba(255,255,255,.03);
      border-radius: var(--radius); padding: 14px;
      display:flex; flex-direction:column; gap:10px;
    }
    .drop.dragover{ border-color: rgba(124,92,255,.85); background: rgba(124,92,255,.12); }
    .help{ font-size: 12px; color: var(--muted); line-height: 1.4; }
    .empty{
      padding: 14px; border-radius: 14px;
      border: 1px solid rgba(255,255,255,.10); background: rgba(255,255,255,.03);
      color: var(--muted); font-size: 13px;
    }
  </style>
</head>
<body>
  <div class="topbar">
    <div class="wrap">
      <div class="header">
        <div class="title">
          <h1>{{ title }}</h1>
          <div><span class="chip">Folder: <b>/{{ rel }}</b></span></div>
          <div class="crumbs">
            <a href="/?path=">Home</a>
{% if not crumbs %}
            <span class="sep">/</span><span>Root</span>
{% endif %}
{% for label, path in crumbs %}
            <span class="sep">/</span><a href="/?path={{ path|q }}">{{ label }}</a>
{% endfor %}
          </div>
        </div>
        <div style="display:flex; gap:8px; flex-wrap:wrap; justify-content:flex-end;">
          <a class="btn small" href="/?path={{ parent|q }}" title="One level up">Up</a>
          <a class="btn small" href="/?path={{ rel|q }}" title="Reload">Refresh</a>
        </div>
      </div>
    </div>
  </div>

  <div class="wrap">
    <div class="grid">
      <div class="card">
        <div class="hd">
          <div class="h">Files &amp; folders</div>
          <div style="min-width: 240px; max-width: 420px; width: 100%;">
            <input id="q" class="search" placeholder="Filter (name contains ...)" autocomplete="off"/>
          </div>
        </div>
        <div class="bd">
          <div class="list" id="list">
            <div class="empty" id="empty" style="display:none;">No matches.</div>
{% for entry in directories %}
            <div class="item" data-name="{{ entry.name }}" data-kind="dir">
              <div class="meta">
                <div class="name">{{ entry.name }}</div>
                <div class="sub"><span class="tag">Folder</span></div>
              </div>
              <a class="btn small" href="/?path={{ join_relpath(rel, entry.name)|q }}">Open</a>
            </div>
{% endfor %}
{% for entry in files %}
            <div class="item" data-name="{{ entry.name }}" data-kind="file">
              <div class="meta">
                <div class="name">{{ entry.name }}</div>
                <div class="sub">
                  <span class="tag">{{ entry.size|filesize }}</span>
                  <span class="tag">&bull;</span>
                  <span class="tag">{{ entry.last_modified.strftime('%Y-%m-%d %H:%M') }}</span>
                </div>
              </div>
              <a class="btn small primary" href="/download?path={{ join_relpath(rel, entry.name)|q }}">Download</a>
            </div>
{% endfor %}
          </div>
        </div>
      </div>

      <div class="card">
        <div class="hd"><div class="h">Upload</div></div>
        <div class="bd">
          <div class="drop" id="drop">
            <div class="help">Pick a file or drop it here. It is stored in the current folder.</div>
            <form id="form" method="post" enctype="multipart/form-data" action="/upload?path={{ rel|q }}">
              <input id="file" type="file" name="{{ field_name }}" style="width:100%;"/>
              <div style="display:flex; gap:10px; margin-top:10px; flex-wrap:wrap;">
                <button class="btn primary" type="submit">Upload</button>
                <a class="btn" href="/?path={{ rel|q }}">Cancel</a>
              </div>
            </form>
            <div class="help" id="hint" style="display:none;">Uploading ...</div>
          </div>
        </div>
      </div>
    </div>
  </div>

  <script>
    (function(){
      const q = document.getElementById('q');
      const empty = document.getElementById('empty');
      const items = Array.from(document.querySelectorAll('#list .item'));

      function applyFilter(){
        const term = (q.value || '').trim().toLowerCase();
        let shown = 0;
        for(const it of items){
          const name = (it.getAttribute('data-name') || '').toLowerCase();
          const ok = !term || name.includes(term);
          it.style.display = ok ? '' : 'none';
          if(ok) shown++;
        }
        empty.style.display = shown ? 'none' : '';
      }
      q.addEventListener('input', applyFilter);
      applyFilter();

      const drop = document.getElementById('drop');
      const file = document.getElementById('file');
      const form = document.getElementById('form');
      const hint = document.getElementById('hint');

      function prevent(e){ e.preventDefault(); e.stopPropagation(); }
      ['dragenter','dragover','dragleave','drop'].forEach(ev => drop.addEventListener(ev, prevent, false));
      ['dragenter','dragover'].forEach(ev => drop.addEventListener(ev, () => drop.classList.add('dragover'), false));
      ['dragleave','drop'].forEach(ev => drop.addEventListener(ev, () => drop.classList.remove('dragover'), false));
      drop.addEventListener('drop', (e) => {
        const dt = e.dataTransfer;
        if(dt && dt.files && dt.files.length){
          file.files = dt.files;
        }
      });
      form.addEventListener('submit', () => {
        hint.style.display = '';
        hint.textContent = 'Uploading ... please wait.';
      });
    })();
  </script>
</body>
</html>
'''

ERROR_TEMPLATE = '''<!doctype html>
<html lang="en">
<head><meta charset="utf-8"/><title>{{ status_code }} {{ reason }}</title></head>
<body style="font-family: ui-sans-serif, system-ui, sans-serif;">
  <h1>Error {{ status_code }}</h1>
  <p>{{ message }}</p>
  <p><a href="/?path=">Back to the root folder</a></p>
</body>
</html>
'''


def quote_path(value:str) -> str:
    return urllib.parse.quote(value or '', safe='/')

environment = Environment(
    loader = DictLoader({
        'listing.html': LISTING_TEMPLATE,
        'error.html': ERROR_TEMPLATE,
    }),
    autoescape = select_autoescape(['html']),
    trim_blocks = True,
    lstrip_blocks = True,
)
environment.filters['q'] = quote_path
environment.filters['filesize'] = format_size
environment.globals['join_relpath'] = join_relpath


def render_listing(rel:str, entries:List[DirectoryEntry], title:str = APP_TITLE, field_name:str = 'file') -> str:
    """Renders the browsing page for the entries of the directory at rel"""
    return environment.get_template('listing.html').render(
        title = title,
        rel = rel,
        parent = parent_relpath(rel),
        crumbs = build_breadcrumbs(rel),
        directories = [e for e in entries if e.is_dir],
        files = [e for e in entries if not e.is_dir],
        field_name = field_name,
    )

def render_error(status_code:int, reason:str, message:str) -> str:
    return environment.get_template('error.html').render(
        status_code = status_code,
        reason = reason,
        message = message,
    )
