# dashboard.py
import html
import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse

from models import JOB_STATES
from storage import Storage

app = FastAPI(title="execq monitor")

_db: Optional[Storage] = None


def get_db() -> Storage:
    global _db
    if _db is None:
        _db = Storage(os.environ.get("EXECQ_DB", "queue.db"))
    return _db


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(db: Storage = Depends(get_db)):
    counts = db.count_by_status()
    cards = "".join(
        f'<div class="card"><h3>{state}</h3><p>{counts.get(state, 0)}</p></div>' for state in JOB_STATES
    )

    rows = db.list_jobs(limit=50, newest_first=True)
    table_html = """
    <h2>Recent jobs</h2>
    <table>
      <tr><th>ID</th><th>Signal</th><th>Status</th><th>Attempt</th><th>Claimed at</th><th>Error</th></tr>
    """
    for job in rows:
        source = job.signal_id or "embedded"
        error = html.escape(job.last_error or "-")
        table_html += (f"<tr><td>{html.escape(job.id)}</td><td>{html.escape(source)}</td><td>{job.status}</td>"
                       f"<td>{job.attempt}</td><td>{job.claimed_at or '-'}</td><td>{error}</td></tr>")
    table_html += "</table>"

    events_html = "<h2>Recent events</h2><table><tr><th>Time</th><th>Stage</th><th>Payload</th></tr>"
    for ev in db.recent_events(limit=20):
        events_html += f"<tr><td>{ev['created_at']}</td><td>{ev['stage']}</td><td>{html.escape(str(ev['payload']))}</td></tr>"
    events_html += "</table>"

    return page("📊 Execution Queue", f'<div class="cards">{cards}</div>' + table_html + events_html)


# ---------- JSON APIs ----------
@app.get("/api/status")
def api_status(db: Storage = Depends(get_db)):
    counts = db.count_by_status()
    return {state: counts.get(state, 0) for state in JOB_STATES}


@app.get("/api/jobs")
def api_jobs(status: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=1000),
             db: Storage = Depends(get_db)):
    if status is not None and status not in JOB_STATES:
        raise HTTPException(status_code=400, detail=f"unknown status {status}")
    return [job.to_dict() for job in db.list_jobs(status=status, limit=limit, newest_first=True)]


@app.get("/api/jobs/{job_id}")
def api_job(job_id: str, db: Storage = Depends(get_db)):
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.to_dict()


@app.get("/api/events")
def api_events(stage: Optional[str] = Query(None), limit: int = Query(50, ge=1, le=500),
               db: Storage = Depends(get_db)):
    return db.recent_events(limit=limit, stage=stage)
