from __future__ import annotations

import json
from typing import Any

INSTRUMENTATION_SCRIPT_VERSION = "3"
BINDING_NAME = "__webseeEmit"


# NOTE: This script is self-contained and idempotent (guarded by
# globalThis.__websee.__version). It installs:
# - a page-to-host event channel through the CDP binding `__webseeEmit`
# - fetch/XHR interceptors that capture the call stack synchronously at the call site
# - uncaught error / unhandled rejection capture
# - a minimal React DevTools hook stub (only when none exists) so renderers register
# - a DOM-identity id registry (WeakMap<Node,id> + WeakRef) for stable component ids
#
# It exposes `globalThis.__websee` with:
# - capabilities(): raw framework capability probes (host decides frameworks)
# - tree({framework, selector, maxDepth, maxNodes}): flat, depth-bounded BFS node list
# - locate(selector): innermost component id owning the element
# - instance(id, {props, state, hooks, context}): point-in-time snapshots
# - renders.start(id, token) / renders.stop(token): scoped post-update subscriptions
# - recentErrors(): small buffer of errors seen before the host subscribed
INSTRUMENTATION_SCRIPT_SOURCE = r"""
(() => {
  const VERSION = "3";
  const BINDING = "__webseeEmit";
  const g = globalThis;

  if (g.__websee && g.__websee.__version === VERSION) {
    return { ok: true, already: true, version: VERSION };
  }
  if (g.__websee) {
    // Older payload: built-ins are already patched by it; never wrap twice.
    return { ok: false, conflict: true, version: g.__websee.__version || null };
  }

  const MAX_STR = 2000;
  const MAX_FRAMES = 10;
  const MAX_KEYS = 50;
  const MAX_PENDING = 500;
  const pending = [];
  const errorsBuf = [];
  const installedAt = Date.now();

  function now() {
    return Date.now();
  }

  function clampStr(s) {
    if (typeof s !== "string") s = String(s);
    if (s.length <= MAX_STR) return s;
    return s.slice(0, MAX_STR) + `… <truncated len=${s.length}>`;
  }

  function safeToString(v) {
    try {
      if (v == null) return String(v);
      if (typeof v === "string") return clampStr(v);
      if (v instanceof Error) return clampStr(v.stack || v.message || String(v));
      return clampStr(JSON.stringify(v));
    } catch (_e) {
      try {
        return clampStr(String(v));
      } catch (_e2) {
        return "<unserializable>";
      }
    }
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Page-to-host channel
  // ──────────────────────────────────────────────────────────────────────────

  function deliver(text) {
    const fn = g[BINDING];
    if (typeof fn !== "function") return false;
    fn(text);
    return true;
  }

  function emit(kind, payload) {
    try {
      const text = JSON.stringify(Object.assign({ kind }, payload));
      while (pending.length) {
        if (!deliver(pending[0])) break;
        pending.shift();
      }
      if (!deliver(text)) {
        pending.push(text);
        if (pending.length > MAX_PENDING) pending.splice(0, pending.length - MAX_PENDING);
      }
    } catch (_e) {
      // ignore
    }
  }

  function flush() {
    let sent = 0;
    try {
      while (pending.length && deliver(pending[0])) {
        pending.shift();
        sent += 1;
      }
    } catch (_e) {
      // ignore
    }
    return sent;
  }

  function __webseeCaptureStack() {
    const raw = String(new Error().stack || "");
    return raw
      .split("\n")
      .slice(1)
      .map((line) => line.trim())
      .filter((line) => line && !line.includes("__websee"))
      .slice(0, MAX_FRAMES);
  }

  function absUrl(input) {
    try {
      return new URL(String(input || ""), g.location ? g.location.href : undefined).toString();
    } catch (_e) {
      return String(input || "");
    }
  }

  function headersToObject(h) {
    const out = {};
    try {
      if (!h) return out;
      if (typeof h.forEach === "function" && !Array.isArray(h)) {
        h.forEach((value, key) => {
          out[String(key).toLowerCase()] = String(value);
        });
        return out;
      }
      const entries = Array.isArray(h) ? h : Object.entries(h);
      for (const [k, v] of entries.slice(0, 100)) out[String(k).toLowerCase()] = String(v);
    } catch (_e) {
      // ignore
    }
    return out;
  }

  function parseRawHeaders(text) {
    const out = {};
    try {
      for (const line of String(text || "").split(/\r?\n/)) {
        const idx = line.indexOf(":");
        if (idx <= 0) continue;
        out[line.slice(0, idx).trim().toLowerCase()] = line.slice(idx + 1).trim();
      }
    } catch (_e) {
      // ignore
    }
    return out;
  }

  function bodyPreview(body) {
    try {
      if (body == null) return null;
      if (typeof body === "string") return clampStr(body);
      if (typeof URLSearchParams !== "undefined" && body instanceof URLSearchParams) return clampStr(body.toString());
      if (typeof FormData !== "undefined" && body instanceof FormData) return "<FormData>";
      if (typeof Blob !== "undefined" && body instanceof Blob) return `<Blob size=${body.size}>`;
      if (body instanceof ArrayBuffer) return `<ArrayBuffer size=${body.byteLength}>`;
      return safeToString(body);
    } catch (_e) {
      return null;
    }
  }

  function isTextual(contentType) {
    const ct = String(contentType || "").toLowerCase();
    return ct.includes("json") || ct.startsWith("text/") || ct.includes("xml") || ct.includes("javascript");
  }

  function isStreaming(contentType) {
    return String(contentType || "").toLowerCase().includes("event-stream");
  }

  // Reads a cloned body up to MAX_STR characters, then cancels the branch.
  function readPreview(resp) {
    let body = null;
    try {
      body = resp.clone().body;
    } catch (_e) {
      body = null;
    }
    if (!body || typeof body.getReader !== "function" || typeof g.TextDecoder !== "function") {
      return Promise.resolve(null);
    }
    const reader = body.getReader();
    const decoder = new g.TextDecoder();
    let text = "";
    const pump = () =>
      reader.read().then((chunk) => {
        if (!chunk.done && chunk.value) text += decoder.decode(chunk.value, { stream: true });
        if (chunk.done) return text;
        if (text.length > MAX_STR) {
          reader.cancel().catch(() => {});
          return text;
        }
        return pump();
      });
    return pump();
  }

  function resourceTiming(url, started) {
    try {
      const perf = g.performance;
      if (!perf || typeof perf.getEntriesByName !== "function") return null;
      const origin = perf.timeOrigin || 0;
      const entries = perf.getEntriesByName(url).filter((e) => origin + e.startTime >= started - 5);
      const e = entries[entries.length - 1];
      if (!e) return null;
      return {
        startTime: e.startTime,
        domainLookupStart: e.domainLookupStart,
        domainLookupEnd: e.domainLookupEnd,
        connectStart: e.connectStart,
        connectEnd: e.connectEnd,
        secureConnectionStart: e.secureConnectionStart,
        requestStart: e.requestStart,
        responseStart: e.responseStart,
        responseEnd: e.responseEnd,
        duration: e.duration,
      };
    } catch (_e) {
      return null;
    }
  }

  let seq = 0;
  function nextRid() {
    seq += 1;
    return `r${installedAt.toString(36)}-${seq}`;
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Network interceptors
  // ──────────────────────────────────────────────────────────────────────────

  try {
    const origFetch = g.fetch;
    if (typeof origFetch === "function") {
      g.fetch = function __webseeFetch(input, init) {
        // Synchronous: provenance is lost once control yields.
        const stack = __webseeCaptureStack();
        const started = now();
        const rid = nextRid();
        let url = "";
        let method = "GET";
        try {
          url = absUrl(typeof input === "string" ? input : input && input.url ? input.url : String(input));
          method = String((init && init.method) || (input && input.method) || "GET").toUpperCase();
        } catch (_e) {
          // ignore
        }
        emit("network:start", {
          rid,
          type: "fetch",
          url,
          method,
          timestamp: started,
          stack,
          headers: headersToObject(init && init.headers),
          body: bodyPreview(init && init.body),
        });

        return origFetch.apply(this, arguments).then(
          (resp) => {
            const end = now();
            let headers = {};
            try {
              headers = headersToObject(resp.headers);
            } catch (_e) {
              headers = {};
            }
            emit("network:complete", {
              rid,
              url,
              method,
              timestamp: started,
              endTs: end,
              status: resp ? resp.status : 0,
              durationMs: end - started,
              headers,
            });
            try {
              const detail = () => ({ rid, url, method, timing: resourceTiming(url, started) });
              const ctype = headers["content-type"];
              if (resp && isTextual(ctype) && !isStreaming(ctype)) {
                readPreview(resp)
                  .then((text) => emit("network:body", text == null ? detail() : Object.assign(detail(), { body: clampStr(text) })))
                  .catch(() => emit("network:body", detail()));
              } else {
                setTimeout(() => emit("network:body", detail()), 0);
              }
            } catch (_e) {
              // ignore
            }
            return resp;
          },
          (err) => {
            emit("network:error", {
              rid,
              url,
              method,
              timestamp: started,
              endTs: now(),
              error: safeToString(err && (err.message || err)),
            });
            throw err;
          },
        );
      };
    }
  } catch (_e) {
    // ignore
  }

  try {
    const XHR = g.XMLHttpRequest;
    if (typeof XHR === "function" && XHR.prototype) {
      const proto = XHR.prototype;
      const origOpen = proto.open;
      const origSend = proto.send;
      const origSetHeader = proto.setRequestHeader;

      proto.open = function __webseeXhrOpen(method, url) {
        try {
          this.__webseeReq = {
            rid: nextRid(),
            method: String(method || "GET").toUpperCase(),
            url: absUrl(url),
            stack: __webseeCaptureStack(),
            headers: {},
          };
        } catch (_e) {
          // ignore
        }
        return origOpen.apply(this, arguments);
      };

      proto.setRequestHeader = function __webseeXhrHeader(name, value) {
        try {
          if (this.__webseeReq) this.__webseeReq.headers[String(name).toLowerCase()] = String(value);
        } catch (_e) {
          // ignore
        }
        return origSetHeader.apply(this, arguments);
      };

      proto.send = function __webseeXhrSend(body) {
        const req = this.__webseeReq;
        if (req) {
          const started = now();
          emit("network:start", {
            rid: req.rid,
            type: "xhr",
            url: req.url,
            method: req.method,
            timestamp: started,
            stack: req.stack,
            headers: req.headers,
            body: bodyPreview(body),
          });
          const xhr = this;
          xhr.addEventListener("loadend", function __webseeXhrDone() {
            const end = now();
            if (!xhr.status) {
              emit("network:error", {
                rid: req.rid,
                url: req.url,
                method: req.method,
                timestamp: started,
                endTs: end,
                error: "XHR failed (status 0)",
              });
              return;
            }
            const headers = parseRawHeaders(xhr.getAllResponseHeaders());
            emit("network:complete", {
              rid: req.rid,
              url: req.url,
              method: req.method,
              timestamp: started,
              endTs: end,
              status: xhr.status,
              durationMs: end - started,
              headers,
            });
            let text = null;
            try {
              if ((xhr.responseType === "" || xhr.responseType === "text") && isTextual(headers["content-type"])) {
                text = clampStr(xhr.responseText);
              }
            } catch (_e) {
              text = null;
            }
            emit("network:body", { rid: req.rid, url: req.url, method: req.method, body: text, timing: resourceTiming(req.url, started) });
          });
        }
        return origSend.apply(this, arguments);
      };
    }
  } catch (_e) {
    // ignore
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Errors
  // ──────────────────────────────────────────────────────────────────────────

  function recordError(entry) {
    errorsBuf.push(entry);
    if (errorsBuf.length > 50) errorsBuf.splice(0, errorsBuf.length - 50);
    emit("error", entry);
  }

  try {
    g.addEventListener(
      "error",
      (ev) => {
        const t = ev && ev.target;
        if (t && t !== g && t.tagName) return;
        const err = ev && ev.error;
        recordError({
          type: "error",
          name: err && err.name ? String(err.name) : "Error",
          message: safeToString(ev && ev.message),
          stack: err && err.stack ? clampStr(String(err.stack)) : null,
          filename: ev && ev.filename ? String(ev.filename) : null,
          lineno: ev && ev.lineno,
          colno: ev && ev.colno,
          timestamp: now(),
        });
      },
      true,
    );
    g.addEventListener("unhandledrejection", (ev) => {
      const reason = ev ? ev.reason : undefined;
      recordError({
        type: "unhandledrejection",
        name: reason && reason.name ? String(reason.name) : "UnhandledRejection",
        message: safeToString(reason && (reason.message || reason)),
        stack: reason && reason.stack ? clampStr(String(reason.stack)) : null,
        timestamp: now(),
      });
    });
  } catch (_e) {
    // ignore
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Snapshots (copies only; never assigns into inspected objects)
  // ──────────────────────────────────────────────────────────────────────────

  function describeNode(n) {
    try {
      if (n.nodeType !== 1) return `<#${n.nodeName || "node"}>`;
      const id = n.id ? `#${n.id}` : "";
      return `<${String(n.tagName).toLowerCase()}${id}>`;
    } catch (_e) {
      return "<node>";
    }
  }

  function snap(v, depth, seen) {
    if (depth == null) depth = 3;
    if (!seen) seen = new WeakSet();
    const t = typeof v;
    if (v === undefined) return null;
    if (v === null || t === "boolean") return v;
    if (t === "number") return Number.isFinite(v) ? v : String(v);
    if (t === "string") return clampStr(v);
    if (t === "bigint") return `${v}n`;
    if (t === "symbol") return String(v);
    if (t === "function") return `[Function ${v.name || "anonymous"}]`;
    try {
      if (typeof Node !== "undefined" && v instanceof Node) return describeNode(v);
      if (v.$$typeof) {
        const ty = v.type;
        const name = typeof ty === "string" ? ty : (ty && (ty.displayName || ty.name)) || "Element";
        return `<${name} />`;
      }
      if (seen.has(v)) return "[Circular]";
      if (v instanceof Date) return v.toISOString();
      if (v instanceof Error) return { name: v.name, message: clampStr(v.message || "") };
      if (typeof Promise !== "undefined" && v instanceof Promise) return "[Promise]";
      if (depth <= 0) return Array.isArray(v) ? `[Array(${v.length})]` : "[Object]";
      seen.add(v);
      if (Array.isArray(v)) return v.slice(0, MAX_KEYS).map((x) => snap(x, depth - 1, seen));
      if (v instanceof Map) {
        const out = {};
        let i = 0;
        for (const [k, x] of v) {
          if (i++ >= MAX_KEYS) break;
          out[String(k)] = snap(x, depth - 1, seen);
        }
        return out;
      }
      if (v instanceof Set) return Array.from(v).slice(0, MAX_KEYS).map((x) => snap(x, depth - 1, seen));
      const out = {};
      for (const k of Object.keys(v).slice(0, MAX_KEYS)) {
        try {
          out[k] = snap(v[k], depth - 1, seen);
        } catch (_e) {
          out[k] = "[Getter error]";
        }
      }
      return out;
    } catch (_e) {
      return "[Unreadable]";
    }
  }

  // ──────────────────────────────────────────────────────────────────────────
  // DOM-identity ids
  // ──────────────────────────────────────────────────────────────────────────

  const domIds = new WeakMap();
  const domRefs = new Map();
  let domSeq = 0;

  function domRef(node) {
    let id = domIds.get(node);
    if (!id) {
      domSeq += 1;
      id = `n${domSeq}`;
      domIds.set(node, id);
      domRefs.set(id, new WeakRef(node));
    }
    return id;
  }

  function domNode(ref) {
    const r = domRefs.get(ref);
    const n = r ? r.deref() : null;
    if (!n) {
      domRefs.delete(ref);
      return null;
    }
    return n.isConnected ? n : null;
  }

  function parseId(id) {
    const parts = String(id || "").split(":");
    if (parts.length !== 3) return null;
    const k = parseInt(parts[2], 10);
    if (!Number.isFinite(k)) return null;
    return { framework: parts[0], ref: parts[1], k };
  }

  function contains(a, b) {
    try {
      return a === b || (!!a && !!b && a.contains(b));
    } catch (_e) {
      return false;
    }
  }

  // ──────────────────────────────────────────────────────────────────────────
  // React
  // ──────────────────────────────────────────────────────────────────────────

  const reactRoots = new Set();
  const commitListeners = new Set();

  function ensureReactHook() {
    let hook = g.__REACT_DEVTOOLS_GLOBAL_HOOK__;
    if (!hook) {
      // Stub so React registers its renderer; inert for the application.
      let rendererSeq = 0;
      hook = {
        renderers: new Map(),
        supportsFiber: true,
        isDisabled: false,
        inject(renderer) {
          rendererSeq += 1;
          this.renderers.set(rendererSeq, renderer);
          return rendererSeq;
        },
        onCommitFiberRoot() {},
        onCommitFiberUnmount() {},
        onPostCommitFiberRoot() {},
        checkDCE() {},
        __webseeStub: true,
      };
      try {
        g.__REACT_DEVTOOLS_GLOBAL_HOOK__ = hook;
      } catch (_e) {
        return null;
      }
    }
    if (!hook.__webseeCommitPatched) {
      const orig = hook.onCommitFiberRoot;
      hook.onCommitFiberRoot = function __webseeOnCommit(rendererId, root) {
        let out;
        if (typeof orig === "function") out = orig.apply(this, arguments);
        try {
          if (root) reactRoots.add(root);
          for (const listener of commitListeners) listener(root);
        } catch (_e) {
          // ignore
        }
        return out;
      };
      hook.__webseeCommitPatched = true;
    }
    return hook;
  }

  function fiberKey(el, prefix) {
    try {
      for (const k of Object.keys(el)) if (k.startsWith(prefix)) return k;
    } catch (_e) {
      // ignore
    }
    return null;
  }

  function isComponentFiber(f) {
    if (!f) return false;
    const ty = f.type;
    if (typeof ty === "function") return true;
    return !!(ty && typeof ty === "object" && (typeof ty.render === "function" || typeof ty.type === "function"));
  }

  function reactName(f) {
    const ty = f.type;
    if (!ty) return "Unknown";
    if (typeof ty === "function") return ty.displayName || ty.name || "Anonymous";
    if (ty.displayName) return ty.displayName;
    const inner = ty.render || ty.type;
    if (inner) return inner.displayName || inner.name || "Anonymous";
    return "Anonymous";
  }

  function reactHost(f) {
    const stack = [f.child];
    let steps = 0;
    while (stack.length && steps < 500) {
      const cur = stack.pop();
      steps += 1;
      if (!cur) continue;
      if (cur.stateNode && cur.stateNode.nodeType === 1 && typeof cur.type === "string") return cur.stateNode;
      if (cur.sibling) stack.push(cur.sibling);
      if (cur.child) stack.push(cur.child);
    }
    return null;
  }

  function reactNest(f, host) {
    let k = 0;
    let cur = f.return;
    let steps = 0;
    while (cur && steps < 1000) {
      steps += 1;
      if (cur.stateNode && cur.stateNode.nodeType === 1) break;
      if (isComponentFiber(cur)) {
        if (reactHost(cur) !== host) break;
        k += 1;
      }
      cur = cur.return;
    }
    return k;
  }

  function reactCurrent(f) {
    // The fiber cached on a DOM node may be the stale alternate.
    const alt = f && f.alternate;
    if (!alt) return f;
    const host = reactHost(f) || reactHost(alt);
    const pk = host ? fiberKey(host, "__reactProps$") : null;
    if (!pk) return f;
    const af = reactHostFiber(alt);
    if (af && af.memoizedProps === host[pk]) return alt;
    return f;
  }

  function reactHostFiber(f) {
    const stack = [f.child];
    let steps = 0;
    while (stack.length && steps < 500) {
      const cur = stack.pop();
      steps += 1;
      if (!cur) continue;
      if (typeof cur.type === "string" && cur.stateNode && cur.stateNode.nodeType === 1) return cur;
      if (cur.sibling) stack.push(cur.sibling);
      if (cur.child) stack.push(cur.child);
    }
    return null;
  }

  function reactRootFibers() {
    const out = [];
    const seen = new Set();
    const add = (fiber) => {
      if (fiber && !seen.has(fiber) && !(fiber.alternate && seen.has(fiber.alternate))) {
        seen.add(fiber);
        out.push(fiber);
      }
    };
    for (const root of reactRoots) if (root && root.current) add(root.current);
    const hook = g.__REACT_DEVTOOLS_GLOBAL_HOOK__;
    try {
      if (hook && hook.renderers && typeof hook.getFiberRoots === "function") {
        for (const id of hook.renderers.keys()) {
          for (const root of hook.getFiberRoots(id) || []) if (root && root.current) add(root.current);
        }
      }
    } catch (_e) {
      // ignore
    }
    try {
      for (const el of Array.from(document.querySelectorAll("*")).slice(0, 2000)) {
        const ck = fiberKey(el, "__reactContainer$");
        if (ck && el[ck]) add(el[ck].stateNode && el[ck].stateNode.current ? el[ck].stateNode.current : el[ck]);
        const legacy = el._reactRootContainer;
        if (legacy && legacy._internalRoot && legacy._internalRoot.current) add(legacy._internalRoot.current);
      }
    } catch (_e) {
      // ignore
    }
    return out;
  }

  function reactFiberOf(el) {
    const key = fiberKey(el, "__reactFiber$") || fiberKey(el, "__reactInternalInstance$");
    return key ? el[key] : null;
  }

  function reactOwnerOf(el) {
    let cur = el;
    let steps = 0;
    while (cur && steps < 200) {
      steps += 1;
      const f = reactFiberOf(cur);
      if (f) {
        let up = f.return;
        let n = 0;
        while (up && n < 1000) {
          n += 1;
          if (isComponentFiber(up)) return up;
          up = up.return;
        }
        return null;
      }
      cur = cur.parentElement;
    }
    return null;
  }

  function reactIdOf(f) {
    const host = reactHost(f);
    if (!host) return null;
    return { id: `react:${domRef(host)}:${reactNest(f, host)}`, host };
  }

  function reactFind(ref, k) {
    const host = domNode(ref);
    if (!host) return null;
    const hf = reactFiberOf(host);
    if (!hf) return null;
    const chain = [];
    let cur = hf.return;
    let steps = 0;
    while (cur && steps < 1000) {
      steps += 1;
      if (cur.stateNode && cur.stateNode.nodeType === 1) break;
      if (isComponentFiber(cur)) {
        if (reactHost(cur) !== host) break;
        chain.push(cur);
      }
      cur = cur.return;
    }
    chain.reverse();
    const f = chain[k];
    return f ? reactCurrent(f) : null;
  }

  function reactSource(f) {
    const s = f._debugSource || (f.type && f.type._debugSource);
    if (!s) return null;
    return { file: s.fileName || null, line: s.lineNumber || null, column: s.columnNumber || null };
  }

  function reactChildren(f) {
    const out = [];
    const stack = [];
    let c = f.child;
    while (c) {
      stack.push(c);
      c = c.sibling;
    }
    stack.reverse();
    let steps = 0;
    while (stack.length && steps < 5000) {
      steps += 1;
      const cur = stack.pop();
      if (isComponentFiber(cur)) {
        out.push(cur);
        continue;
      }
      const kids = [];
      let ch = cur.child;
      while (ch) {
        kids.push(ch);
        ch = ch.sibling;
      }
      for (let i = kids.length - 1; i >= 0; i -= 1) stack.push(kids[i]);
    }
    return out;
  }

  function reactTopComponents(rootFiber) {
    if (isComponentFiber(rootFiber)) return [rootFiber];
    return reactChildren(rootFiber);
  }

  function reactHooks(f) {
    const out = [];
    if (!f || typeof f.type !== "function" || (f.type.prototype && f.type.prototype.isReactComponent)) return out;
    let h = f.memoizedState;
    let index = 0;
    while (h && typeof h === "object" && "next" in h && index < 100) {
      const ms = h.memoizedState;
      const entry = { index, hasQueue: !!h.queue, hasSetter: !!(h.queue && typeof h.queue.dispatch === "function") };
      if (ms && typeof ms === "object" && "create" in ms && "deps" in ms) {
        entry.effect = true;
        entry.deps = Array.isArray(ms.deps) ? snap(ms.deps, 2) : null;
        entry.value = null;
      } else if (!h.queue && Array.isArray(ms) && ms.length === 2 && (Array.isArray(ms[1]) || ms[1] === null)) {
        entry.deps = ms[1] === null ? null : snap(ms[1], 2);
        entry.memo = true;
        entry.value = snap(ms[0], 2);
      } else {
        entry.ref = !!(ms && typeof ms === "object" && !Array.isArray(ms) && Object.keys(ms).length === 1 && "current" in ms);
        entry.value = snap(ms, 2);
      }
      out.push(entry);
      h = h.next;
      index += 1;
    }
    return out;
  }

  function reactState(f) {
    if (f.stateNode && f.tag === 1 && f.stateNode.state != null) return snap(f.stateNode.state);
    const hooks = reactHooks(f).filter((h) => h.hasQueue);
    if (!hooks.length) return null;
    const out = {};
    for (const h of hooks) out[`hook${h.index}`] = h.value;
    return out;
  }

  function reactProps(f) {
    const p = f.memoizedProps;
    if (!p || typeof p !== "object") return {};
    return snap(p);
  }

  function reactContexts(f) {
    const out = [];
    const byCtx = new Map();
    let item = f.dependencies && f.dependencies.firstContext;
    let i = 0;
    while (item && i < 20) {
      const ctx = item.context;
      if (ctx && !byCtx.has(ctx)) {
        const entry = { name: ctx.displayName || `Context_${out.length}`, value: snap(item.memoizedValue, 2), consumed: true, provider: null };
        byCtx.set(ctx, entry);
        out.push(entry);
      }
      item = item.next;
      i += 1;
    }
    let cur = f.return;
    let steps = 0;
    while (cur && steps < 1000) {
      steps += 1;
      const ty = cur.type;
      // React 19 uses the context object itself as provider type.
      const ctx = ty && typeof ty === "object" ? ty._context || (ty.Provider === ty ? ty : null) : null;
      if (ctx && cur.memoizedProps && "value" in cur.memoizedProps) {
        const name = reactName(cur) !== "Anonymous" ? reactName(cur) : ctx.displayName || `Context_${out.length}`;
        const existing = byCtx.get(ctx);
        if (existing) {
          if (existing.provider === null) existing.provider = name;
        } else {
          const entry = { name: ctx.displayName || `Context_${out.length}`, value: snap(cur.memoizedProps.value, 2), consumed: false, provider: name };
          byCtx.set(ctx, entry);
          out.push(entry);
        }
      }
      cur = cur.return;
    }
    return out;
  }

  function reactSignature(f) {
    const cur = reactCurrent(f);
    return cur ? { props: cur.memoizedProps, state: cur.memoizedState } : null;
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Vue 3
  // ──────────────────────────────────────────────────────────────────────────

  function vueHost(inst) {
    let el = (inst.subTree && inst.subTree.el) || (inst.vnode && inst.vnode.el);
    if (el && el.nodeType !== 1) el = el.nextElementSibling || null;
    return el && el.nodeType === 1 ? el : null;
  }

  function vueNest(inst, host) {
    let k = 0;
    let cur = inst.parent;
    let steps = 0;
    while (cur && steps < 1000 && vueHost(cur) === host) {
      k += 1;
      cur = cur.parent;
      steps += 1;
    }
    return k;
  }

  function vueName(inst) {
    const ty = inst.type || {};
    return ty.name || ty.__name || (ty.__file ? String(ty.__file).split("/").pop().replace(/\.vue$/, "") : "Anonymous");
  }

  function vueChildren(inst) {
    const out = [];
    const stack = [inst.subTree];
    let steps = 0;
    while (stack.length && steps < 5000) {
      steps += 1;
      const vnode = stack.pop();
      if (!vnode) continue;
      if (vnode.component && vnode.component !== inst) {
        out.push(vnode.component);
        continue;
      }
      if (vnode.suspense && vnode.suspense.activeBranch) stack.push(vnode.suspense.activeBranch);
      const kids = vnode.children;
      if (Array.isArray(kids)) for (let i = kids.length - 1; i >= 0; i -= 1) if (kids[i] && typeof kids[i] === "object") stack.push(kids[i]);
    }
    return out;
  }

  function vueRoots() {
    const out = [];
    try {
      for (const el of Array.from(document.querySelectorAll("*")).slice(0, 2000)) {
        const app = el.__vue_app__;
        if (app && app._instance && !out.includes(app._instance)) out.push(app._instance);
      }
    } catch (_e) {
      // ignore
    }
    return out;
  }

  function vueOwnerOf(el) {
    let cur = el;
    let steps = 0;
    while (cur && steps < 200) {
      steps += 1;
      if (cur.__vueParentComponent) return cur.__vueParentComponent;
      cur = cur.parentElement;
    }
    return null;
  }

  function vueFind(ref, k) {
    const host = domNode(ref);
    if (!host) return null;
    let inst = host.__vueParentComponent;
    while (inst && vueHost(inst) !== host) inst = inst.parent;
    const chain = [];
    let steps = 0;
    while (inst && vueHost(inst) === host && steps < 1000) {
      chain.push(inst);
      inst = inst.parent;
      steps += 1;
    }
    chain.reverse();
    return chain[k] || null;
  }

  function vueState(inst) {
    const out = {};
    const merge = (src) => {
      if (!src || typeof src !== "object") return;
      for (const k of Object.keys(src).slice(0, MAX_KEYS)) {
        if (k.startsWith("_") || k.startsWith("$")) continue;
        try {
          const v = src[k];
          if (typeof v !== "function") out[k] = snap(v);
        } catch (_e) {
          out[k] = "[Getter error]";
        }
      }
    };
    merge(inst.data);
    merge(inst.setupState);
    return Object.keys(out).length ? out : null;
  }

  function vueContexts(inst) {
    const out = [];
    const provides = inst.provides;
    if (!provides || typeof provides !== "object") return out;
    let count = 0;
    for (const k in provides) {
      if (count >= 20) break;
      count += 1;
      out.push({ name: String(k), value: snap(provides[k], 2), consumed: false, provider: null });
    }
    for (const sym of Object.getOwnPropertySymbols(provides).slice(0, 20)) {
      out.push({ name: String(sym), value: snap(provides[sym], 2), consumed: false, provider: null });
    }
    return out;
  }

  const vueUpdateListeners = new Set();
  function ensureVueHook() {
    const hook = g.__VUE_DEVTOOLS_GLOBAL_HOOK__;
    if (!hook || typeof hook.on !== "function") return false;
    if (!hook.__webseeUpdatePatched) {
      hook.on("component:updated", (_app, uid, _parentUid, component) => {
        for (const listener of vueUpdateListeners) listener(uid, component);
      });
      hook.__webseeUpdatePatched = true;
    }
    return true;
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Angular
  // ──────────────────────────────────────────────────────────────────────────

  function ngComponentOf(el) {
    const ng = g.ng;
    if (!ng || !el) return null;
    try {
      if (typeof ng.getComponent === "function") return ng.getComponent(el) || null;
      if (typeof ng.probe === "function") {
        const dbg = ng.probe(el);
        return dbg && dbg.componentInstance && dbg.nativeElement === el ? dbg.componentInstance : null;
      }
    } catch (_e) {
      return null;
    }
    return null;
  }

  function ngHostAbove(el) {
    let cur = el;
    let steps = 0;
    while (cur && steps < 500) {
      steps += 1;
      if (ngComponentOf(cur)) return cur;
      cur = cur.parentElement;
    }
    return null;
  }

  function ngProps(el, comp) {
    const out = {};
    try {
      const meta = g.ng && typeof g.ng.getDirectiveMetadata === "function" ? g.ng.getDirectiveMetadata(comp) : null;
      const inputs = meta && meta.inputs ? Object.keys(meta.inputs) : [];
      for (const k of inputs.slice(0, MAX_KEYS)) out[k] = snap(comp[k]);
    } catch (_e) {
      // ignore
    }
    return out;
  }

  function ngState(comp) {
    const out = {};
    for (const k of Object.keys(comp).slice(0, MAX_KEYS)) {
      if (k.startsWith("_")) continue;
      try {
        const v = comp[k];
        if (typeof v !== "function") out[k] = snap(v);
      } catch (_e) {
        out[k] = "[Getter error]";
      }
    }
    return out;
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Capability probes + tree
  // ──────────────────────────────────────────────────────────────────────────

  function capabilities() {
    const caps = { globalHook: {}, internalInstance: {}, devtools: {}, versions: {} };
    try {
      const rh = g.__REACT_DEVTOOLS_GLOBAL_HOOK__;
      caps.globalHook.react = !!(rh && rh.renderers && rh.renderers.size > 0);
      if (rh && rh.renderers) {
        for (const r of rh.renderers.values()) if (r && r.version) caps.versions.react = String(r.version);
      }
      caps.globalHook.vue = !!(g.__VUE__ || (g.__VUE_DEVTOOLS_GLOBAL_HOOK__ && g.__VUE_DEVTOOLS_GLOBAL_HOOK__.apps));
      const els = Array.from(document.querySelectorAll("*")).slice(0, 1500);
      for (const el of els) {
        if (!caps.internalInstance.react && (fiberKey(el, "__reactFiber$") || fiberKey(el, "__reactInternalInstance$") || fiberKey(el, "__reactContainer$") || el._reactRootContainer)) {
          caps.internalInstance.react = true;
        }
        if (!caps.internalInstance.vue && (el.__vue_app__ || el.__vueParentComponent)) {
          caps.internalInstance.vue = true;
          if (el.__vue_app__ && el.__vue_app__.version) caps.versions.vue = String(el.__vue_app__.version);
        }
        if (!caps.internalInstance.angular && el.__ngContext__ != null) caps.internalInstance.angular = true;
      }
      caps.devtools.angular = !!(g.ng && (typeof g.ng.getComponent === "function" || typeof g.ng.probe === "function"));
      const ngv = document.querySelector("[ng-version]");
      if (ngv) caps.versions.angular = String(ngv.getAttribute("ng-version"));
      caps.devtools.vue = !!(g.__VUE_DEVTOOLS_GLOBAL_HOOK__ && typeof g.__VUE_DEVTOOLS_GLOBAL_HOOK__.on === "function");
      caps.devtools.react = !!(rh && !rh.__webseeStub);
    } catch (_e) {
      // ignore
    }
    return caps;
  }

  function tree(opts) {
    opts = opts || {};
    const framework = String(opts.framework || "");
    const maxDepth = Math.max(1, Math.min(opts.maxDepth || 64, 512));
    const maxNodes = Math.max(1, Math.min(opts.maxNodes || 2000, 20000));
    const nodes = [];
    const byId = new Map();
    let truncated = false;

    let anchor = null;
    if (opts.selector) {
      try {
        anchor = document.querySelector(opts.selector);
      } catch (e) {
        return { ok: false, found: false, message: `Invalid selector: ${safeToString(e && e.message)}` };
      }
      if (!anchor) return { ok: true, found: false, message: `No element matches selector ${opts.selector}`, nodes: [] };
    }

    // Adapters: identity, children, name, source for each framework.
    let starts = [];
    let adapter = null;
    if (framework === "react") {
      ensureReactHook();
      adapter = {
        ident: reactIdOf,
        children: reactChildren,
        name: reactName,
        source: reactSource,
      };
      if (anchor) {
        const owner = reactOwnerOf(anchor);
        starts = owner ? [owner] : [];
      } else {
        for (const rf of reactRootFibers()) starts.push(...reactTopComponents(rf));
      }
    } else if (framework === "vue") {
      adapter = {
        ident: (inst) => {
          const host = vueHost(inst);
          return host ? { id: `vue:${domRef(host)}:${vueNest(inst, host)}`, host } : null;
        },
        children: vueChildren,
        name: vueName,
        source: (inst) => (inst.type && inst.type.__file ? { file: String(inst.type.__file), line: null, column: null } : null),
      };
      if (anchor) {
        const owner = vueOwnerOf(anchor);
        starts = owner ? [owner] : [];
      } else {
        starts = vueRoots();
      }
    } else if (framework === "angular") {
      const hosts = [];
      const scope = anchor ? ngHostAbove(anchor) : null;
      if (anchor && !scope) return { ok: true, found: false, message: `No component owns ${opts.selector}`, nodes: [] };
      const candidates = scope ? [scope, ...Array.from(scope.querySelectorAll("*"))] : Array.from(document.querySelectorAll("*"));
      for (const el of candidates.slice(0, maxNodes * 10)) if (ngComponentOf(el)) hosts.push(el);
      // Document order is pre-order: parents precede children.
      for (const el of hosts) {
        if (nodes.length >= maxNodes) {
          truncated = true;
          break;
        }
        let parent = null;
        let up = el.parentElement;
        while (up && !(scope && !contains(scope, up))) {
          const pid = domIds.get(up);
          if (pid && byId.has(`angular:${pid}:0`)) {
            parent = byId.get(`angular:${pid}:0`);
            break;
          }
          up = up.parentElement;
        }
        const depth = parent ? parent.depth + 1 : 0;
        if (depth >= maxDepth) {
          truncated = true;
          continue;
        }
        const comp = ngComponentOf(el);
        const ref = domRef(el);
        const node = {
          id: `angular:${ref}:0`,
          name: (comp && comp.constructor && comp.constructor.name) || "Anonymous",
          framework: "angular",
          depth,
          parentId: parent ? parent.id : null,
          childIds: [],
          domRef: ref,
          source: null,
        };
        if (parent) parent.childIds.push(node.id);
        nodes.push(node);
        byId.set(node.id, node);
      }
      return { ok: true, found: true, framework, nodes, truncated };
    } else {
      return { ok: true, found: true, framework, nodes: [], truncated: false };
    }

    // Breadth-first, depth-bounded; visited set guards against cyclic internals.
    const visited = new WeakSet();
    const queue = starts.map((inst) => ({ inst, depth: 0, parent: null }));
    let head = 0;
    while (head < queue.length) {
      const { inst, depth, parent } = queue[head];
      head += 1;
      if (!inst || visited.has(inst) || (inst.alternate && visited.has(inst.alternate))) continue;
      visited.add(inst);
      if (nodes.length >= maxNodes) {
        truncated = true;
        break;
      }
      const ident = adapter.ident(inst);
      let self = parent;
      let nextDepth = depth;
      if (ident && !byId.has(ident.id)) {
        // Attach to the nearest ancestor whose DOM contains this host (portals).
        let p = parent;
        while (p && !contains(p.__host, ident.host)) p = p.__parent;
        const node = {
          id: ident.id,
          name: adapter.name(inst),
          framework,
          depth: p ? p.depth + 1 : 0,
          parentId: p ? p.id : null,
          childIds: [],
          domRef: ident.id.split(":")[1],
          source: adapter.source(inst),
        };
        Object.defineProperty(node, "__host", { value: ident.host, enumerable: false });
        Object.defineProperty(node, "__parent", { value: p, enumerable: false });
        if (p) p.childIds.push(node.id);
        nodes.push(node);
        byId.set(node.id, node);
        self = node;
        nextDepth = node.depth + 1;
      }
      if (nextDepth >= maxDepth) {
        if (adapter.children(inst).length) truncated = true;
        continue;
      }
      for (const child of adapter.children(inst)) queue.push({ inst: child, depth: nextDepth, parent: self });
    }
    return { ok: true, found: true, framework, nodes, truncated };
  }

  function locate(selector) {
    let el = null;
    try {
      el = document.querySelector(selector);
    } catch (e) {
      return { found: false, message: `Invalid selector: ${safeToString(e && e.message)}` };
    }
    if (!el) return { found: false, message: `No element matches selector ${selector}` };
    const rf = reactOwnerOf(el);
    if (rf) {
      const ident = reactIdOf(rf);
      if (ident) return { found: true, id: ident.id, framework: "react", name: reactName(rf) };
    }
    const vi = vueOwnerOf(el);
    if (vi) {
      const host = vueHost(vi);
      if (host) return { found: true, id: `vue:${domRef(host)}:${vueNest(vi, host)}`, framework: "vue", name: vueName(vi) };
    }
    const ngHost = ngHostAbove(el);
    if (ngHost) {
      const comp = ngComponentOf(ngHost);
      return { found: true, id: `angular:${domRef(ngHost)}:0`, framework: "angular", name: (comp && comp.constructor && comp.constructor.name) || "Anonymous" };
    }
    return { found: false, message: `Element ${selector} is not owned by any detected component` };
  }

  function resolveInstance(id) {
    const p = parseId(id);
    if (!p) return { error: `Malformed component id ${id}` };
    if (!domNode(p.ref)) return { error: `Component ${id} is no longer mounted` };
    if (p.framework === "react") {
      const f = reactFind(p.ref, p.k);
      return f ? { framework: "react", inst: f } : { error: `No React component at ${id}` };
    }
    if (p.framework === "vue") {
      const inst = vueFind(p.ref, p.k);
      return inst ? { framework: "vue", inst } : { error: `No Vue component at ${id}` };
    }
    if (p.framework === "angular") {
      const host = domNode(p.ref);
      const comp = ngComponentOf(host);
      return comp ? { framework: "angular", inst: comp, host } : { error: `No Angular component at ${id}` };
    }
    return { error: `Unsupported framework in id ${id}` };
  }

  function instance(id, opts) {
    opts = opts || {};
    const r = resolveInstance(id);
    if (r.error) return { found: false, message: r.error };
    const out = { found: true, id, framework: r.framework };
    if (r.framework === "react") {
      const f = r.inst;
      out.name = reactName(f);
      out.source = reactSource(f);
      if (opts.props !== false) out.props = reactProps(f);
      if (opts.state !== false) out.state = reactState(f);
      if (opts.hooks !== false) out.hooks = reactHooks(f);
      if (opts.context !== false) out.contexts = reactContexts(f);
    } else if (r.framework === "vue") {
      const inst = r.inst;
      out.name = vueName(inst);
      out.source = inst.type && inst.type.__file ? { file: String(inst.type.__file), line: null, column: null } : null;
      if (opts.props !== false) out.props = snap(inst.props || {});
      if (opts.state !== false) out.state = vueState(inst);
      if (opts.hooks !== false) out.hooks = [];
      if (opts.context !== false) out.contexts = vueContexts(inst);
    } else {
      const comp = r.inst;
      out.name = (comp.constructor && comp.constructor.name) || "Anonymous";
      out.source = null;
      if (opts.props !== false) out.props = ngProps(r.host, comp);
      if (opts.state !== false) out.state = ngState(comp);
      if (opts.hooks !== false) out.hooks = [];
      if (opts.context !== false) out.contexts = [];
    }
    return out;
  }

  // ──────────────────────────────────────────────────────────────────────────
  // Render subscriptions
  // ──────────────────────────────────────────────────────────────────────────

  const renderSubs = new Map();

  function startRenders(id, token) {
    stopRenders(token);
    const p = parseId(id);
    if (!p) return { found: false, message: `Malformed component id ${id}` };
    const host = domNode(p.ref);
    if (!host) return { found: false, message: `Component ${id} is no longer mounted` };
    const fire = (reason) => emit("render", { token, componentId: id, timestamp: now(), reason: reason || null });

    if (p.framework === "react" && ensureReactHook() && reactFind(p.ref, p.k)) {
      let last = reactSignature(reactFind(p.ref, p.k));
      const listener = () => {
        const f = reactFind(p.ref, p.k);
        const sig = f ? reactSignature(f) : null;
        if (!sig || !last) return;
        const propsChanged = sig.props !== last.props;
        const stateChanged = sig.state !== last.state;
        last = sig;
        if (propsChanged || stateChanged) fire(stateChanged ? (propsChanged ? "props+state" : "state") : "props");
      };
      commitListeners.add(listener);
      renderSubs.set(token, () => commitListeners.delete(listener));
      return { found: true, ok: true, signal: "react-commit" };
    }

    if (p.framework === "vue" && ensureVueHook()) {
      const inst = vueFind(p.ref, p.k);
      if (inst) {
        const listener = (uid, component) => {
          if (component === inst || uid === inst.uid) fire("update");
        };
        vueUpdateListeners.add(listener);
        renderSubs.set(token, () => vueUpdateListeners.delete(listener));
        return { found: true, ok: true, signal: "vue-updated" };
      }
    }

    // Fallback post-update signal: coalesced DOM mutations under the host.
    let scheduled = false;
    const observer = new MutationObserver(() => {
      if (scheduled) return;
      scheduled = true;
      queueMicrotask(() => {
        scheduled = false;
        fire("dom-mutation");
      });
    });
    observer.observe(host, { subtree: true, childList: true, attributes: true, characterData: true });
    renderSubs.set(token, () => observer.disconnect());
    return { found: true, ok: true, signal: "mutation-observer" };
  }

  function stopRenders(token) {
    const release = renderSubs.get(token);
    if (!release) return false;
    renderSubs.delete(token);
    try {
      release();
    } catch (_e) {
      // ignore
    }
    return true;
  }

  try {
    ensureReactHook();
  } catch (_e) {
    // Deferred: retried at query time.
  }

  g.__websee = {
    __version: VERSION,
    installedAt,
    capabilities,
    tree,
    locate,
    instance,
    renders: { start: startRenders, stop: stopRenders, active: () => renderSubs.size },
    recentErrors: () => errorsBuf.slice(),
    flush,
  };

  return { ok: true, installed: true, version: VERSION };
})()
"""


def call_expression(path: str, *args: Any) -> str:
    """Build an expression calling `globalThis.__websee.<path>(...args)`.

    Evaluates to `{"__missing": true}` when the payload is absent (e.g. right
    after a navigation, before the new-document script ran).
    """
    encoded = ", ".join(json.dumps(arg) for arg in args)
    return (
        "(() => {"
        "  const w = globalThis.__websee;"
        f"  if (!w || w.__version !== {json.dumps(INSTRUMENTATION_SCRIPT_VERSION)}) return {{ __missing: true }};"
        f"  return w.{path}({encoded});"
        "})()"
    )


MARKER_CHECK_EXPRESSION = (
    "("
    "globalThis.__websee && "
    f"globalThis.__websee.__version === {json.dumps(INSTRUMENTATION_SCRIPT_VERSION)} && "
    "typeof globalThis.__websee.tree === 'function'"
    ") === true"
)
