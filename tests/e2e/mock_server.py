from aiohttp import web

# Single-page onboarding form: email, then phone, then a summary page.
# Every page change is preceded by a request to /api/<step> so the
# engine's network-idle waits have something to settle on.
ONBOARDING_PAGE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>Mock onboarding</title></head>
<body>
<main id="app"></main>
<script>
const DONE_URL = "__DONE_URL__";
const FINISH_EARLY = __FINISH_EARLY__;
const PENDING = __PENDING__;
const app = document.getElementById("app");

const pages = {
  email: `<h1>Enter your email</h1>
    <form id="form"><label for="email">Email</label><input id="email" name="email">
    <button type="submit">Continue</button></form>`,
  phone: `<h1>Add your phone number</h1>
    <form id="form"><label for="phone">Mobile phone number</label><input id="phone" name="phone">
    <button type="submit">Continue</button></form>`,
  summary: `<h1>Review and finish</h1>
    ${PENDING ? '<div role="status">Missing information</div>' : ''}
    <button data-testid="requirements-index-done-button" id="done">Done</button>`,
};

async function save(step, payload) {
  await fetch("/api/" + step, {method: "POST", body: JSON.stringify(payload)});
}

function show(name) {
  app.innerHTML = pages[name];
  if (name === "summary") {
    document.getElementById("done").addEventListener("click", () => {
      save("summary", {}).then(() => setTimeout(() => { location.href = DONE_URL; }, 300));
    });
    return;
  }
  document.getElementById("form").addEventListener("submit", (event) => {
    event.preventDefault();
    const input = app.querySelector("input");
    if (name === "email") {
      if (FINISH_EARLY) { location.href = DONE_URL; return; }
      save("email", {email: input.value}).then(() => show("phone"));
    } else {
      if (input.value.replace(/\\D/g, "").length !== 10) {
        app.insertAdjacentHTML("beforeend", '<div role="alert">Phone number invalid</div>');
        return;
      }
      save("phone", {phone: input.value}).then(() => show("summary"));
    }
  });
}

show("email");
</script>
</body>
</html>
"""


async def handle_onboarding(request: web.Request) -> web.Response:
    # localhost resolves to this server but is a different host than 127.0.0.1,
    # so navigating there leaves the target site.
    done_url = f"http://localhost:{request.app['server']['port']}/done"
    html = (
        ONBOARDING_PAGE
        .replace("__DONE_URL__", done_url)
        .replace("__FINISH_EARLY__", "true" if request.query.get("finish_early") else "false")
        .replace("__PENDING__", "true" if request.query.get("pending") else "false")
    )
    return web.Response(text=html, content_type="text/html")


async def handle_api(request: web.Request) -> web.Response:
    hits = request.app['hits']
    requests = request.app['requests']
    step = request.match_info['step']
    hits[step] = hits.get(step, 0) + 1
    body = await request.text()
    requests.append({'path': request.path, 'method': request.method, 'body': body})
    return web.json_response({'step': step})


async def handle_done(request: web.Request) -> web.Response:
    request.app['hits']['done'] = request.app['hits'].get('done', 0) + 1
    return web.Response(text="<h1>You're all set</h1>", content_type="text/html")


async def create_mock_server():
    app = web.Application()
    app['hits'] = {}
    app['requests'] = []
    app['server'] = {}
    app.router.add_get('/onboarding', handle_onboarding)
    app.router.add_post('/api/{step}', handle_api)
    app.router.add_get('/done', handle_done)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '127.0.0.1', 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]
    app['server']['port'] = port
    base_url = f'http://127.0.0.1:{port}'
    return runner, base_url, app['hits'], app['requests']


async def shutdown_mock_server(runner):
    await runner.cleanup()
