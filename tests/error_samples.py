"""Real-world dev-server output used across the classifier and monitor tests."""

from __future__ import annotations

# ── React ────────────────────────────────────────────────────────────

REACT_INFINITE_LOOP = """
Error: Maximum update depth exceeded. This can happen when a component repeatedly calls setState inside componentWillUpdate or componentDidUpdate. React limits the number of nested updates to prevent infinite loops.
    at checkForNestedUpdates (/app/node_modules/react-dom/cjs/react-dom.development.js:25463:15)
    at scheduleUpdateOnFiber (/app/node_modules/react-dom/cjs/react-dom.development.js:21840:5)
    at Object.enqueueSetState (/app/node_modules/react-dom/cjs/react-dom.development.js:14642:3)
    at UserProfile.setState (/app/node_modules/react/cjs/react.development.js:365:16)
    at UserProfile.render (/app/src/components/UserProfile.tsx:42:10)
  """

REACT_ROUTER_ERROR = """
Error: useNavigate() may be used only in the context of a <Router> component.
    at useNavigate (/app/node_modules/react-router/dist/index.js:142:11)
    at NavigationButton (/app/src/components/Navigation.tsx:15:20)
    at renderWithHooks (/app/node_modules/react-dom/cjs/react-dom.development.js:16305:18)
    at mountIndeterminateComponent (/app/node_modules/react-dom/cjs/react-dom.development.js:20074:13)
  """

REACT_COMPONENT_TYPE_ERROR = """
Error: Element type is invalid: expected a string (for built-in components) or a class/function (for composite components) but got: undefined. You likely forgot to export your component from the file it's defined in, or you might have mixed up default and named imports.

Check the render method of `App`.
    at createFiberFromTypeAndProps (/app/node_modules/react-dom/cjs/react-dom.development.js:27469:21)
    at createFiberFromElement (/app/node_modules/react-dom/cjs/react-dom.development.js:27495:15)
    at reconcileChildFibers (/app/node_modules/react-dom/cjs/react-dom.development.js:15893:35)
  """

# ── TypeScript / JavaScript ──────────────────────────────────────────

UNDEFINED_PROPERTY = """
TypeError: Cannot read properties of undefined (reading 'map')
    at UserList (/app/src/components/UserList.tsx:25:31)
    at renderWithHooks (/app/node_modules/react-dom/cjs/react-dom.development.js:16305:18)
    at mountIndeterminateComponent (/app/node_modules/react-dom/cjs/react-dom.development.js:20074:13)
    at beginWork (/app/node_modules/react-dom/cjs/react-dom.development.js:21587:16)
  """

MODULE_NOT_FOUND = """
Error: Cannot resolve module './utils/nonexistent' from '/app/src/components/Dashboard.tsx'
    at resolveModule (/app/node_modules/vite/dist/node/chunks/dep-df561101.js:44403:21)
    at resolveId (/app/node_modules/vite/dist/node/chunks/dep-df561101.js:44268:33)
    at Object.resolveId (/app/node_modules/vite/dist/node/chunks/dep-df561101.js:44033:55)
  """

REFERENCE_ERROR = """
ReferenceError: someUndefinedVariable is not defined
    at calculateTotal (/app/src/utils/math.ts:34:12)
    at processOrder (/app/src/services/order.ts:89:25)
    at OrderPage (/app/src/pages/OrderPage.tsx:67:18)
    at renderWithHooks (/app/node_modules/react-dom/cjs/react-dom.development.js:16305:18)
  """

CONST_ASSIGNMENT = """
TypeError: Assignment to constant variable.
    at updateConfig (/app/src/config/settings.ts:15:5)
    at initialize (/app/src/main.ts:23:7)
    at Module.<anonymous> (/app/src/main.ts:45:1)
    at Object.Module._extensions..ts (/app/node_modules/ts-node/src/index.ts:1608:43)
  """

DUPLICATE_IDENTIFIER = """
Error: Duplicate identifier 'UserType'.
/app/src/types/user.ts(12,13): 'UserType' was also declared here.
    at checkDuplicateIdentifier (/app/node_modules/typescript/lib/typescript.js:42156:22)
    at checkTypeDeclaration (/app/node_modules/typescript/lib/typescript.js:42287:17)
    at checkSourceFileWorker (/app/node_modules/typescript/lib/typescript.js:105143:13)
  """

# ── Vite ─────────────────────────────────────────────────────────────

VITE_BUILD_FAILED = """
[vite:build] Rollup failed to resolve import "./components/MissingComponent" from "src/App.tsx".
Error: Could not resolve "./components/MissingComponent" from src/App.tsx
    at error (/app/node_modules/rollup/dist/shared/rollup.js:158:30)
    at ModuleLoader.handleResolveId (/app/node_modules/rollup/dist/shared/rollup.js:22541:24)
    at /app/node_modules/rollup/dist/shared/rollup.js:22505:26
  """

VITE_TRANSFORM_FAILED = """
[vite] Internal server error: Transform failed with 1 error:
/app/src/components/BrokenComponent.tsx:15:25: ERROR: Expected "}" but found ";"
  15 │     return <div className={;
     ╵                            ^

    at failureErrorWithLog (/app/node_modules/esbuild/lib/main.js:1603:15)
    at /app/node_modules/esbuild/lib/main.js:1249:28
    at runOnEndCallbacks (/app/node_modules/esbuild/lib/main.js:1034:63)
  """

VITE_CSS_ERROR = """
[vite] Pre-transform error: Failed to resolve import "./styles/nonexistent.css" from "src/App.tsx"
    at formatError (/app/node_modules/vite/dist/node/chunks/dep-f0e4b793.js:49830:46)
    at TransformContext.error (/app/node_modules/vite/dist/node/chunks/dep-f0e4b793.js:49826:19)
    at TransformContext.resolve (/app/node_modules/vite/dist/node/chunks/dep-f0e4b793.js:49744:28)
  """

# ── Third-party SDKs and network ─────────────────────────────────────

OPENAI_API_ERROR = """
OpenAIError: 401 Unauthorized - Incorrect API key provided: sk-proj-************. You can find your API key at https://platform.openai.com/account/api-keys.
    at APIError.generate (/app/node_modules/openai/error.js:44:20)
    at OpenAI.makeStatusError (/app/node_modules/openai/core.js:263:25)
    at OpenAI.makeRequest (/app/node_modules/openai/core.js:306:24)
    at async OpenAI.makeRequestWithRetries (/app/node_modules/openai/core.js:324:14)
    at async generateCompletion (/app/src/services/ai.ts:28:18)
  """

DATABASE_CONNECTION_ERROR = """
Error: connect ECONNREFUSED 127.0.0.1:5432
    at TCPConnectWrap.afterConnect [as oncomplete] (node:net:1157:16)
    at connectToDatabase (/app/src/lib/database.ts:45:12)
    at initializeApp (/app/src/main.ts:15:8)
    at Object.<anonymous> (/app/src/main.ts:78:1)
  """

FETCH_API_ERROR = """
TypeError: fetch failed
    cause: Error: getaddrinfo ENOTFOUND api.example.com
        at GetAddrInfoReqWrap.onlookup [as oncomplete] (node:dns:107:26) {
      errno: -3008,
      code: 'ENOTFOUND',
      syscall: 'getaddrinfo',
      hostname: 'api.example.com'
    }
    at Object.fetch (node:internal/deps/undici/undici:11576:11)
    at process.processTicksAndRejections (node:internal/process/task_queues:95:5)
    at async apiCall (/app/src/services/api.ts:52:20)
    at async fetchUserData (/app/src/hooks/useUser.ts:34:16)
  """

# ── CSS ──────────────────────────────────────────────────────────────

CSS_PARSE_ERROR = """
[vite:css] Unexpected } at 1:25
1 | .my-class { color: red; } }
  |                         ^
    at Input.error (/app/node_modules/postcss/lib/input.js:148:16)
    at Parser.other (/app/node_modules/postcss/lib/parser.js:288:18)
    at Parser.parse (/app/node_modules/postcss/lib/parser.js:56:16)
  """

TAILWIND_ERROR = """
[vite:css] [postcss] Cannot find utility class 'invalid-tailwind-class' in Tailwind CSS
  at processTailwind (/app/node_modules/@tailwindcss/postcss7-compat/src/index.js:128:13)
  at /app/src/styles/globals.css:15:3
  """

# ── Syntax ───────────────────────────────────────────────────────────

SYNTAX_ERROR_MISSING_BRACKET = """
SyntaxError: Unexpected end of input
    at wrapSafe (node:internal/modules/cjs/loader:1032:16)
    at Module._compile (node:internal/modules/cjs/loader:1067:27)
    at Object.Module._extensions..js (node:internal/modules/cjs/loader:1157:10)
    at Module.load (node:internal/modules/cjs/loader:932:32)
    at Function.Module._load (node:internal/modules/cjs/loader:773:14)
    at Module.require (/app/src/utils/parser.js:24:32)
  """

SYNTAX_ERROR_INVALID_TOKEN = """
SyntaxError: Invalid or unexpected token
    at new Function (<anonymous>)
    at evalCode (/app/src/dynamic/evaluator.ts:18:5)
    at processUserInput (/app/src/services/interpreter.ts:45:12)
    at MessageHandler (/app/src/components/ChatBox.tsx:89:23)
  """

SYNTAX_ERROR_UNEXPECTED_TOKEN = """
SyntaxError: Unexpected token '}'
    at checkSyntax (/app/src/compiler/validator.ts:67:15)
    at validateCode (/app/src/compiler/index.ts:34:8)
    at CodeEditor (/app/src/components/CodeEditor.tsx:156:18)
    at renderWithHooks (/app/node_modules/react-dom/cjs/react-dom.development.js:16305:18)
  """

# ── Python ───────────────────────────────────────────────────────────

PYTHON_TRACEBACK = """Traceback (most recent call last):
  File "/app/src/server.py", line 10, in <module>
    main()
  File "/app/src/server.py", line 6, in main
    raise ValueError("bad value for port")
ValueError: bad value for port
"""

PYTHON_MISSING_MODULE = """Traceback (most recent call last):
  File "/app/src/app.py", line 1, in <module>
    import requests
ModuleNotFoundError: No module named 'requests'
"""

# ── Harmless output (must never be reported) ─────────────────────────

VITE_COMMAND_ECHO = "$ vite --host 0.0.0.0 --port ${PORT:-3000}"
VITE_STDERR_ECHO = "ERROR: $ vite --host 0.0.0.0 --port ${PORT:-3000}"
INSPECTOR_PORT_MESSAGE = "Default inspector port 9229 not available, using 9230 instead"
INSPECTOR_PORT_ERROR = "ERROR: Default inspector port 9229 not available, using 9230 instead"
VITE_READY_MESSAGE = "VITE v6.3.5  ready in 722 ms"
VITE_LOCAL_URL = "Local:   http://localhost:3000/"
VITE_NETWORK_URL = "Network: http://192.168.1.100:3000/"
VITE_FORMATTED_URL = "➜  Local:   http://localhost:3000/"
VITE_HMR_UPDATE = "[vite] hmr update /src/App.tsx"
VITE_PAGE_RELOAD = "[vite] page reload src/main.tsx (hmr update failed)"
VITE_TIMED_HMR_UPDATE = "10:22:33 AM [vite] hmr update /src/pages/error.tsx"
VITE_TIMED_PAGE_RELOAD = "10:22:41 AM [vite] page reload src/components/ErrorBoundary.tsx"
VITE_TIMED_HMR_REPEAT = "22:04:10 [vite] hmr update /src/error-page.tsx (x3)"
PROCESS_STARTED = "Process started: bun run dev"
BUN_RUNTIME_MESSAGE = "[bun] starting dev server..."
COMPILATION_SUCCESS = "compiled successfully in 1.2s"
PORT_FALLBACK = "Port 3000 is in use, trying another one..."

# (sample, category, source_file, line_number)
CLASSIFIED_SAMPLES = [
    (REACT_INFINITE_LOOP, "runtime", "src/components/UserProfile.tsx", 42),
    (REACT_ROUTER_ERROR, "runtime", "src/components/Navigation.tsx", 15),
    (REACT_COMPONENT_TYPE_ERROR, "runtime", None, None),
    (UNDEFINED_PROPERTY, "runtime", "src/components/UserList.tsx", 25),
    (MODULE_NOT_FOUND, "dependency", "src/components/Dashboard.tsx", None),
    (REFERENCE_ERROR, "runtime", "src/utils/math.ts", 34),
    (CONST_ASSIGNMENT, "runtime", "src/config/settings.ts", 15),
    (VITE_BUILD_FAILED, "dependency", "src/App.tsx", None),
    (VITE_TRANSFORM_FAILED, "build", "src/components/BrokenComponent.tsx", 15),
    (VITE_CSS_ERROR, "dependency", "src/App.tsx", None),
    (OPENAI_API_ERROR, "configuration", "src/services/ai.ts", 28),
    (DATABASE_CONNECTION_ERROR, "network", "src/lib/database.ts", 45),
    (FETCH_API_ERROR, "network", "src/services/api.ts", 52),
    (CSS_PARSE_ERROR, "build", None, None),
    (TAILWIND_ERROR, "build", "src/styles/globals.css", 15),
    (SYNTAX_ERROR_MISSING_BRACKET, "syntax", "src/utils/parser.js", 24),
    (SYNTAX_ERROR_INVALID_TOKEN, "syntax", "src/dynamic/evaluator.ts", 18),
    (SYNTAX_ERROR_UNEXPECTED_TOKEN, "syntax", "src/compiler/validator.ts", 67),
    (PYTHON_TRACEBACK, "runtime", "src/server.py", 6),
    (PYTHON_MISSING_MODULE, "dependency", "src/app.py", 1),
]

FALSE_POSITIVES = [
    VITE_COMMAND_ECHO,
    VITE_STDERR_ECHO,
    INSPECTOR_PORT_MESSAGE,
    INSPECTOR_PORT_ERROR,
    VITE_READY_MESSAGE,
    VITE_LOCAL_URL,
    VITE_NETWORK_URL,
    VITE_FORMATTED_URL,
    VITE_HMR_UPDATE,
    VITE_PAGE_RELOAD,
    VITE_TIMED_HMR_UPDATE,
    VITE_TIMED_PAGE_RELOAD,
    VITE_TIMED_HMR_REPEAT,
    PROCESS_STARTED,
    BUN_RUNTIME_MESSAGE,
    COMPILATION_SUCCESS,
    PORT_FALLBACK,
]

# Ordinary stdout that mentions failure words without reporting an error.
STDOUT_NOISE = [
    "Tests: 12 passed, 0 failed",
    " GET /api/error 200 in 12ms",
    "compiled client and server (error overlay enabled)",
]
