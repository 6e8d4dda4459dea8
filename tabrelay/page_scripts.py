"""
JavaScript run inside the page through AutomationSurface.run_script().

Each constant is the source of one function; run_script() calls it with
JSON arguments and returns its JSON result. Element operations all go
through ELEMENT_SCRIPT so an element is always located fresh by xpath:

    run_script(tab, frame, ELEMENT_SCRIPT, [xpath, "text", []])
        -> {"found": true, "value": "Sign in"}
        -> {"found": false}
        -> {"found": true, "error": "Element is not a <select> element"}
"""

# Name of the page -> executor binding used by CAPTURE_SCRIPT
SIGNAL_BINDING = "__tabrelaySignal"

ELEMENT_SCRIPT = r"""
function (xpath, op, opArgs) {
  const el = document.evaluate(xpath, document, null,
    XPathResult.FIRST_ORDERED_NODE_TYPE, null).singleNodeValue;
  if (!el) return { found: false };
  opArgs = opArgs || [];

  const reveal = () => el.scrollIntoView({ behavior: 'auto', block: 'center', inline: 'center' });
  const fail = (error) => ({ found: true, error });
  const ok = (value) => ({ found: true, value: value === undefined ? null : value });
  const fire = (type) => el.dispatchEvent(new Event(type, { bubbles: true }));
  const label = (opt) => (opt.textContent || '').trim();

  switch (op) {
    case 'exists':
      return ok(true);

    case 'center': {
      reveal();
      const rect = el.getBoundingClientRect();
      return ok({ x: rect.left + rect.width / 2, y: rect.top + rect.height / 2 });
    }

    case 'click':
      reveal();
      el.click();
      return ok(true);

    case 'hover':
      reveal();
      for (const type of ['mouseover', 'mouseenter', 'mousemove']) {
        el.dispatchEvent(new MouseEvent(type, { bubbles: type !== 'mouseenter' }));
      }
      return ok(true);

    case 'focus':
      reveal();
      el.focus();
      return ok(true);

    case 'focus_clear':
      reveal();
      el.focus();
      if (el.tagName === 'INPUT' || el.tagName === 'TEXTAREA') {
        el.value = '';
      } else if (el.isContentEditable) {
        el.textContent = '';
      } else {
        return fail('Element is not fillable');
      }
      return ok(true);

    case 'text':
      return ok((el.textContent || '').trim());

    case 'value':
      return ok('value' in el ? String(el.value) : (el.textContent || '').trim());

    case 'set_checked': {
      const wanted = !!opArgs[0];
      if (el.tagName !== 'INPUT') return fail('Element is not an input element');
      const type = (el.type || '').toLowerCase();
      if (type !== 'checkbox' && type !== 'radio') {
        return fail(`Element is not a checkbox or radio (type: ${type})`);
      }
      const before = el.checked;
      if (before !== wanted) {
        reveal();
        el.checked = wanted;
        fire('change');
        fire('input');
      }
      return ok({ wasChecked: before });
    }

    case 'select': {
      const wanted = String(opArgs[0]);
      if (el.tagName !== 'SELECT') return fail('Element is not a <select> element');
      reveal();
      el.focus();
      const options = Array.from(el.options);
      const lower = wanted.toLowerCase();
      const match = options.find(o => o.value === wanted)
        || options.find(o => label(o) === wanted)
        || options.find(o => o.value.toLowerCase() === lower || label(o).toLowerCase() === lower);
      if (!match) {
        const available = options.map(o => ({ value: o.value, label: label(o) }));
        return fail(`Option "${wanted}" not found. Available options: ${JSON.stringify(available)}`);
      }
      el.value = match.value;
      fire('change');
      fire('input');
      return ok({ selectedValue: match.value, selectedLabel: label(match) || match.value });
    }

    default:
      return fail(`Unknown element operation: ${op}`);
  }
}
"""

VIEWPORT_SCRIPT = r"""
function () {
  return { width: window.innerWidth, height: window.innerHeight };
}
"""

SCROLL_SCRIPT = r"""
function (dx, dy) {
  window.scrollBy(dx, dy);
  return { scrollX: window.scrollX, scrollY: window.scrollY };
}
"""

EVAL_SCRIPT = r"""
function (code) {
  return (new Function(`return (${code})`))();
}
"""

DOM_TREE_READY_SCRIPT = r"""
function () {
  return typeof window.buildDomTree === 'function';
}
"""

DOM_TREE_SCRIPT = r"""
function (args) {
  return window.buildDomTree(args);
}
"""

# Full-page extraction: -1 disables the viewport filter
DOM_TREE_ARGS = {
    "showHighlightElements": False,
    "focusHighlightIndex": -1,
    "viewportExpansion": -1,
    "debugMode": False,
    "startId": 0,
    "startHighlightIndex": 0,
}

FRAME_ELEMENT_SCRIPT = r"""
function (selector) {
  const el = document.querySelector(selector);
  if (!el) return { found: false };
  const tag = el.tagName.toLowerCase();
  if (tag !== 'iframe' && tag !== 'frame') {
    return { found: true, error: `Element is not an iframe (tag: ${tag})` };
  }
  let url = el.src || '';
  try {
    if (el.contentWindow) url = el.contentWindow.location.href;
  } catch (e) {
    // cross-origin: keep the src attribute
  }
  return { found: true, name: el.name || el.id || '', url };
}
"""

# Installed on every document of a traced tab. Reports raw interactions to
# the executor through the SIGNAL_BINDING function.
CAPTURE_SCRIPT = r"""
(function () {
  if (window.__tabrelayCapture) return;
  window.__tabrelayCapture = true;
  const emit = (payload) => {
    payload.url = location.href;
    payload.timestamp = Date.now();
    try { window.__tabrelaySignal(JSON.stringify(payload)); } catch (e) {}
  };

  function xpathOf(el) {
    if (el.id) return `//*[@id="${el.id}"]`;
    if (el === document.body) return '/html/body';
    const parent = el.parentElement;
    if (!parent) return '/' + el.tagName.toLowerCase();
    let index = 1;
    for (const sibling of parent.children) {
      if (sibling === el) break;
      if (sibling.tagName === el.tagName) index++;
    }
    return `${xpathOf(parent)}/${el.tagName.toLowerCase()}[${index}]`;
  }

  function cssOf(el) {
    const parts = [];
    let current = el;
    while (current && current !== document.body) {
      if (current.id) { parts.unshift('#' + current.id); break; }
      let part = current.tagName.toLowerCase();
      const classes = (typeof current.className === 'string' ? current.className : '')
        .split(/\s+/).filter(c => c && /^[a-zA-Z_]/.test(c));
      if (classes.length) part += '.' + classes.slice(0, 2).join('.');
      parts.unshift(part);
      current = current.parentElement;
    }
    return parts.join(' > ');
  }

  function refOf(el) {
    for (let current = el; current; current = current.parentElement) {
      const index = parseInt(current.getAttribute('data-highlight-index'), 10);
      if (!isNaN(index)) return index;
    }
    return null;
  }

  function describe(el) {
    const tag = el.tagName.toLowerCase();
    let name = el.getAttribute('aria-label') || '';
    if (!name && el.id) {
      const lbl = document.querySelector(`label[for="${el.id}"]`);
      if (lbl) name = (lbl.textContent || '').trim();
    }
    if (!name) {
      name = el.getAttribute('title') || el.getAttribute('alt') || el.placeholder ||
        (el.textContent || '').trim().slice(0, 50) || '';
    }
    return {
      tag, name,
      role: el.getAttribute('role') || '',
      xpath: xpathOf(el),
      cssSelector: cssOf(el),
      ref: refOf(el),
      inputType: tag === 'input' ? (el.type || '').toLowerCase() : null,
      checked: 'checked' in el ? el.checked : null,
    };
  }

  document.addEventListener('click', (e) => {
    if (e.target instanceof Element) emit({ kind: 'click', element: describe(e.target) });
  }, true);

  document.addEventListener('input', (e) => {
    const el = e.target;
    if (el && 'value' in el && el.tagName !== 'SELECT') {
      emit({ kind: 'input', element: describe(el), value: el.value });
    }
  }, true);

  document.addEventListener('change', (e) => {
    const el = e.target;
    if (el && el.tagName === 'SELECT') {
      const opt = el.options[el.selectedIndex];
      emit({ kind: 'change', element: describe(el), value: opt ? opt.text : el.value });
    }
  }, true);

  document.addEventListener('keydown', (e) => {
    emit({ kind: 'keydown', key: e.key, ctrlKey: e.ctrlKey, metaKey: e.metaKey,
           element: e.target instanceof Element ? describe(e.target) : null });
  }, true);

  let lastY = window.scrollY;
  window.addEventListener('scroll', () => {
    const y = window.scrollY;
    if (y !== lastY) emit({ kind: 'scroll', deltaY: y - lastY });
    lastY = y;
  }, { passive: true });
})();
"""
