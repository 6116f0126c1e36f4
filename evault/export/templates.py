"""Browser verifier shipped inside every export bundle.

verify.html + verify.js run from the extracted bundle with no network and no
server. They repeat the offline verifier's two checks with WebCrypto
SHA-256: file hashes against manifest.json, and the export transcript chain
of custody_log.jsonl. The stored BLAKE2b chain and Ed25519 signatures are
left to `evault verify-export`, since browsers ship neither primitive.
"""

VERIFY_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Evidence Vault - Verify Export</title>
    <style>
      body { font-family: ui-sans-serif, system-ui, -apple-system, sans-serif; margin: 32px; color: #1f2937; }
      h1 { font-size: 20px; margin-bottom: 8px; }
      h2 { font-size: 16px; margin: 0 0 8px; }
      p { font-size: 14px; color: #4b5563; }
      .card { border: 1px solid #e5e7eb; border-radius: 12px; padding: 16px; margin-top: 16px; }
      label { font-size: 13px; font-weight: 600; }
      button { margin-top: 12px; padding: 8px 12px; border-radius: 8px; border: 1px solid #111827; background: #111827; color: #fff; cursor: pointer; }
      pre { background: #f9fafb; padding: 12px; border-radius: 8px; font-size: 12px; white-space: pre-wrap; }
    </style>
  </head>
  <body>
    <h1>Verify Evidence Vault export</h1>
    <p>
      Select the exported <strong>manifest.json</strong> and the files you want to verify.
      Optionally add <strong>custody_log.jsonl</strong> to replay each item's custody chain.
    </p>

    <div class="card">
      <label for="manifestInput">manifest.json</label><br />
      <input id="manifestInput" type="file" accept="application/json,.json" />
      <div style="margin-top: 12px;">
        <label for="fileInput">Exported files</label><br />
        <input id="fileInput" type="file" multiple />
      </div>
      <div style="margin-top: 12px;">
        <label for="custodyInput">custody_log.jsonl (optional)</label><br />
        <input id="custodyInput" type="file" accept=".jsonl,.json,text/plain" />
      </div>
      <button id="verifyButton" type="button">Verify</button>
    </div>

    <div class="card">
      <h2>Results</h2>
      <pre id="output">No verification yet.</pre>
    </div>

    <script src="./verify.js"></script>
  </body>
</html>
"""

VERIFY_JS = r"""(() => {
  const manifestInput = document.getElementById('manifestInput')
  const fileInput = document.getElementById('fileInput')
  const custodyInput = document.getElementById('custodyInput')
  const verifyButton = document.getElementById('verifyButton')
  const output = document.getElementById('output')

  const readFileText = (file) =>
    new Promise((resolve, reject) => {
      const reader = new FileReader()
      reader.onload = () => resolve(reader.result || '')
      reader.onerror = () => reject(reader.error)
      reader.readAsText(file)
    })

  const toHex = (buffer) =>
    Array.from(new Uint8Array(buffer))
      .map((b) => b.toString(16).padStart(2, '0'))
      .join('')

  const sha256Hex = async (data) => toHex(await crypto.subtle.digest('SHA-256', data))
  const sha256Text = (text) => sha256Hex(new TextEncoder().encode(text))

  const canonicalize = (value) => {
    if (value === null || value === undefined) return null
    if (typeof value === 'number') return Number.isFinite(value) ? value : null
    if (Array.isArray(value)) return value.map(canonicalize)
    if (typeof value === 'object') {
      const out = {}
      for (const key of Object.keys(value).sort()) {
        if (value[key] === undefined) continue
        out[key] = canonicalize(value[key])
      }
      return out
    }
    return value
  }
  const canonicalStringify = (value) => JSON.stringify(canonicalize(value))

  const normalizeKey = (file) => (file.webkitRelativePath || file.name).replace(/\\/g, '/')

  const matchEntry = (expected, file) => {
    const key = normalizeKey(file)
    const candidates = [key, `media/${file.name}`, file.name]
    for (const candidate of candidates) {
      if (expected.has(candidate)) return candidate
    }
    for (const name of expected.keys()) {
      if (key.endsWith('/' + name)) return name
    }
    return null
  }

  const verifyFiles = async (manifest, files) => {
    const entries = Array.isArray(manifest.files) ? manifest.files : []
    const expected = new Map(entries.map((entry) => [entry.filename, String(entry.sha256).toLowerCase()]))
    const lines = []
    let failed = 0
    for (const file of files) {
      const name = matchEntry(expected, file)
      if (!name) {
        lines.push(`${normalizeKey(file)}: no matching entry in manifest`)
        failed += 1
        continue
      }
      const actual = await sha256Hex(await file.arrayBuffer())
      const ok = actual === expected.get(name)
      if (!ok) failed += 1
      lines.push(`${name}: ${ok ? 'OK' : 'MISMATCH'}`)
    }
    return { lines, failed, total: files.length }
  }

  const verifyCustody = async (text) => {
    const groups = new Map()
    const malformed = []
    text.split(/\r?\n/).forEach((raw, index) => {
      if (!raw.trim()) return
      const lineNo = index + 1
      let entry
      try {
        entry = JSON.parse(raw)
      } catch (err) {
        malformed.push(`line ${lineNo}: invalid JSON`)
        return
      }
      const required = ['id', 'itemId', 'ts', 'action', 'canonical', 'exportHashSha256']
      const missing = required.filter((k) => entry === null || typeof entry !== 'object' || entry[k] === undefined || entry[k] === null || entry[k] === '')
      if (missing.length) {
        malformed.push(`line ${lineNo}: missing fields: ${missing.join(', ')}`)
        return
      }
      if (!groups.has(entry.itemId)) groups.set(entry.itemId, [])
      groups.get(entry.itemId).push({ lineNo, entry })
    })

    const lines = []
    let failed = 0
    for (const [itemId, rows] of groups) {
      const sorted = [...rows].sort((a, b) => a.entry.ts - b.entry.ts)
      const issues = []
      let prev = null
      for (const { lineNo, entry } of sorted) {
        const where = `line ${lineNo}, event ${entry.id}`
        const expectedCanonical = canonicalStringify({
          id: entry.id,
          itemId: entry.itemId,
          ts: entry.ts,
          action: entry.action,
          details: entry.details === undefined ? null : entry.details,
        })
        if (expectedCanonical !== entry.canonical) issues.push(`${where}: canonical mismatch (confirm with the command-line verifier)`)
        if ((entry.exportPrevHashSha256 || null) !== prev) issues.push(`${where}: prev-hash mismatch`)
        const hash = await sha256Text(`${prev || ''}${entry.canonical}`)
        if (hash !== String(entry.exportHashSha256).toLowerCase()) issues.push(`${where}: hash mismatch`)
        prev = entry.exportHashSha256
      }
      if (issues.length) failed += 1
      lines.push(`item ${itemId}: ${issues.length ? 'FAIL' : 'OK'} (${rows.length} events)`)
      issues.forEach((issue) => lines.push(`  - ${issue}`))
    }
    malformed.forEach((m) => lines.push(`malformed ${m}`))
    return { lines, failed, total: groups.size, malformed: malformed.length }
  }

  verifyButton.addEventListener('click', async () => {
    const manifestFile = manifestInput.files && manifestInput.files[0]
    const files = fileInput.files ? Array.from(fileInput.files) : []
    const custodyFile = custodyInput.files && custodyInput.files[0]

    if (!manifestFile || (files.length === 0 && !custodyFile)) {
      output.textContent = 'Select manifest.json and at least one file or the custody log to verify.'
      return
    }

    try {
      const manifest = JSON.parse(await readFileText(manifestFile))
      const results = []
      let ok = true

      if (files.length) {
        const fileResult = await verifyFiles(manifest, files)
        results.push(...fileResult.lines)
        results.push(`files ok=${fileResult.total - fileResult.failed} failed=${fileResult.failed}`)
        if (fileResult.failed) ok = false
      }

      if (custodyFile) {
        const custodyResult = await verifyCustody(await readFileText(custodyFile))
        results.push(...custodyResult.lines)
        results.push(
          `items ok=${custodyResult.total - custodyResult.failed} failed=${custodyResult.failed}; malformed lines=${custodyResult.malformed}`
        )
        if (custodyResult.failed || custodyResult.malformed) ok = false
      }

      results.push(`RESULT: ${ok ? 'OK' : 'FAIL'}`)
      output.textContent = results.join('\n')
    } catch (err) {
      output.textContent = 'Verification failed: ' + (err && err.message ? err.message : err)
    }
  })
})()
"""
