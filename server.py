#!/usr/bin/env python3
"""
InShare - local network file sharing server
- Uploads of any size stream straight to disk
- Every file deletes itself after its first complete download
- Discoverable on local network via mDNS/Bonjour
"""

import argparse
import logging
import os
import socket
from datetime import datetime

from flask import Flask, request, render_template_string, jsonify, send_file
from werkzeug.serving import WSGIRequestHandler
from zeroconf import ServiceInfo, Zeroconf

from storage import (
    ABANDONED_UPLOAD_MAX_AGE,
    CLEANUP_INTERVAL,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_DELETE_DELAY,
    RETENTION_MAX_AGE,
    NoFilesProvided,
    PayloadTooLarge,
    Reclaimer,
    ShareError,
    StorageFull,
    UploadRequest,
    UploadStream,
    ensure_storage_dir,
    list_files,
    open_download,
    promote_uploads,
    purge_incomplete_uploads,
    remove_file,
    stream_download,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
SIZE_UNITS = ['Bytes', 'KB', 'MB', 'GB', 'TB']


def _get_optional_int_env(env_key):
    raw_value = os.environ.get(env_key)
    if raw_value is None or raw_value == '':
        return None
    try:
        return int(raw_value)
    except ValueError:
        return None


def _get_optional_float_env(env_key):
    raw_value = os.environ.get(env_key)
    if raw_value is None or raw_value == '':
        return None
    try:
        return float(raw_value)
    except ValueError:
        return None


def _get_bool_env(env_key, default=False):
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_or(value, default):
    return default if value is None else value


app = Flask(__name__)
app.request_class = UploadRequest

# Configuration
_retention = _env_or(_get_optional_int_env('INSHARE_RETENTION_MAX_AGE'), RETENTION_MAX_AGE)
app.config.update(
    UPLOAD_FOLDER=os.environ.get('INSHARE_UPLOAD_FOLDER')
    or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'uploads'),
    MAX_UPLOAD_SIZE=_get_optional_int_env('INSHARE_MAX_UPLOAD_SIZE'),  # None: limited by disk space only
    ABANDONED_UPLOAD_MAX_AGE=_env_or(_get_optional_int_env('INSHARE_ABANDONED_MAX_AGE'), ABANDONED_UPLOAD_MAX_AGE),
    RETENTION_MAX_AGE=_retention or None,  # 0 keeps files until downloaded
    CLEANUP_INTERVAL=_env_or(_get_optional_int_env('INSHARE_CLEANUP_INTERVAL'), CLEANUP_INTERVAL),
    DOWNLOAD_DELETE_DELAY=_env_or(_get_optional_float_env('INSHARE_DOWNLOAD_DELETE_DELAY'), DOWNLOAD_DELETE_DELAY),
    DOWNLOAD_CHUNK_SIZE=DOWNLOAD_CHUNK_SIZE,
    TRANSFER_TIMEOUT=_get_optional_float_env('INSHARE_TRANSFER_TIMEOUT'),  # None: slow peers never time out
    UPLOAD_ALL_OR_NOTHING=_get_bool_env('INSHARE_UPLOAD_ALL_OR_NOTHING'),
    PORT=_env_or(_get_optional_int_env('PORT'), DEFAULT_PORT),
)

HTML_TEMPLATE = '''
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>InShare</title>
    <style>
        * { box-sizing: border-box; margin: 0; padding: 0; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: #10141f;
            color: #e6e9f0;
            min-height: 100vh;
            display: flex;
            flex-direction: column;
            align-items: center;
            padding: 40px 20px;
        }
        h1 { font-size: 2.4rem; margin-bottom: 6px; }
        .subtitle { color: #8b93a7; margin-bottom: 8px; }
        .network-url { color: #7aa2ff; margin-bottom: 32px; font-family: monospace; }
        .panel { width: 100%; max-width: 640px; }
        .drop-zone {
            min-height: 220px;
            border: 3px dashed #3b4358;
            border-radius: 18px;
            display: flex;
            flex-direction: column;
            align-items: center;
            justify-content: center;
            padding: 32px;
            cursor: pointer;
            transition: border-color 0.2s, background 0.2s;
        }
        .drop-zone.dragover { border-color: #7aa2ff; background: rgba(122,162,255,0.08); }
        .drop-zone-icon { font-size: 3.5rem; margin-bottom: 12px; }
        .btn {
            background: #4f6df5;
            color: #fff;
            border: none;
            padding: 12px 32px;
            font-size: 1rem;
            border-radius: 24px;
            cursor: pointer;
            margin-top: 16px;
        }
        #fileInput { display: none; }
        .row {
            background: rgba(255,255,255,0.05);
            border-radius: 10px;
            padding: 14px 18px;
            margin-top: 10px;
            display: flex;
            align-items: center;
            justify-content: space-between;
            gap: 12px;
        }
        .row-info { flex: 1; overflow: hidden; }
        .row-name { overflow: hidden; text-overflow: ellipsis; white-space: nowrap; }
        .row-meta { color: #8b93a7; font-size: 0.85rem; margin-top: 4px; }
        .progress { height: 4px; background: rgba(255,255,255,0.1); border-radius: 2px; margin-top: 8px; }
        .progress-fill { height: 100%; width: 0%; background: #4f6df5; transition: width 0.3s; }
        .ok { color: #5fd38d; }
        .err { color: #f47272; }
        .actions a, .actions button {
            border: none;
            border-radius: 18px;
            padding: 8px 16px;
            font-size: 0.85rem;
            cursor: pointer;
            text-decoration: none;
            color: #fff;
        }
        .actions a { background: #2f9e62; }
        .actions button { background: #a23b3b; margin-left: 6px; }
        .section-title { margin: 40px 0 10px; display: flex; justify-content: space-between; align-items: center; }
        .empty-msg { color: #8b93a7; text-align: center; padding: 24px; }
    </style>
</head>
<body>
    <h1>📁 InShare</h1>
    <p class="subtitle">Files are deleted automatically after they are downloaded</p>
    <p class="network-url" id="networkUrl"></p>

    <div class="panel">
        <div class="drop-zone" id="dropZone">
            <div class="drop-zone-icon">📤</div>
            <p>Drag & drop files here or click to select</p>
            <button class="btn" type="button" onclick="fileInput.click()">Choose Files</button>
        </div>
        <input type="file" id="fileInput" multiple>
        <div id="uploads"></div>

        <div class="section-title">
            <span>📥 Available Downloads</span>
            <button class="btn" type="button" onclick="loadFiles()">Refresh</button>
        </div>
        <div id="downloads"><p class="empty-msg">Loading...</p></div>
    </div>

    <script>
        const dropZone = document.getElementById('dropZone');
        const fileInput = document.getElementById('fileInput');
        const uploads = document.getElementById('uploads');

        ['dragenter', 'dragover', 'dragleave', 'drop'].forEach(name => {
            dropZone.addEventListener(name, e => { e.preventDefault(); e.stopPropagation(); });
        });
        ['dragenter', 'dragover'].forEach(name => {
            dropZone.addEventListener(name, () => dropZone.classList.add('dragover'));
        });
        ['dragleave', 'drop'].forEach(name => {
            dropZone.addEventListener(name, () => dropZone.classList.remove('dragover'));
        });
        dropZone.addEventListener('drop', e => upload(e.dataTransfer.files));
        dropZone.addEventListener('click', e => { if (e.target.tagName !== 'BUTTON') fileInput.click(); });
        fileInput.addEventListener('change', e => { upload(e.target.files); fileInput.value = ''; });

        function escapeHtml(text) {
            const div = document.createElement('div');
            div.textContent = text;
            return div.innerHTML;
        }

        function upload(files) {
            if (!files.length) return;
            const names = [...files].map(f => escapeHtml(f.name)).join(', ');
            const row = document.createElement('div');
            row.className = 'row';
            row.innerHTML = `
                <div class="row-info">
                    <div class="row-name">${names}</div>
                    <div class="row-meta">Uploading...</div>
                    <div class="progress"><div class="progress-fill"></div></div>
                </div>`;
            uploads.prepend(row);
            const meta = row.querySelector('.row-meta');
            const fill = row.querySelector('.progress-fill');

            const formData = new FormData();
            [...files].forEach(f => formData.append('files', f));

            const xhr = new XMLHttpRequest();
            xhr.open('POST', '/upload', true);
            xhr.upload.onprogress = e => {
                if (e.lengthComputable) fill.style.width = (e.loaded / e.total * 100) + '%';
            };
            xhr.onload = () => {
                let body = {};
                try { body = JSON.parse(xhr.responseText); } catch (err) {}
                if (xhr.status === 200) {
                    meta.textContent = '✓ ' + body.message;
                    meta.className = 'row-meta ok';
                    loadFiles();
                } else {
                    meta.textContent = '✗ ' + (body.error || 'Upload failed');
                    meta.className = 'row-meta err';
                }
            };
            xhr.onerror = () => {
                meta.textContent = '✗ Connection lost';
                meta.className = 'row-meta err';
            };
            xhr.send(formData);
        }

        function loadFiles() {
            fetch('/files')
                .then(r => r.json())
                .then(files => {
                    const list = document.getElementById('downloads');
                    if (!files.length) {
                        list.innerHTML = '<p class="empty-msg">No files available for download</p>';
                        return;
                    }
                    list.innerHTML = files.map(f => `
                        <div class="row">
                            <div class="row-info">
                                <div class="row-name">${escapeHtml(f.originalName)}</div>
                                <div class="row-meta">${f.size} · ${f.uploadDate}</div>
                            </div>
                            <div class="actions">
                                <a href="/download/${encodeURIComponent(f.filename)}"
                                   onclick="setTimeout(loadFiles, 3000)">Download</a>
                                <button type="button" data-name="${encodeURIComponent(f.filename)}"
                                        onclick="removeFile(this.dataset.name)">Delete</button>
                            </div>
                        </div>`).join('');
                })
                .catch(() => {
                    document.getElementById('downloads').innerHTML = '<p class="empty-msg">Error loading files</p>';
                });
        }

        function removeFile(name) {
            fetch('/delete/' + name, { method: 'DELETE' }).then(loadFiles);
        }

        fetch('/api/network-info')
            .then(r => r.json())
            .then(info => { document.getElementById('networkUrl').textContent = info.networkUrl; });
        loadFiles();
    </script>
</body>
</html>
'''


def format_file_size(size):
    """Human readable size, e.g. ``1.5 MB``."""
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f'{round(value, 2):g} {SIZE_UNITS[unit]}'


def format_upload_date(timestamp):
    return datetime.fromtimestamp(timestamp).strftime('%d %b %Y, %H:%M')


def describe_file(stored):
    return {
        'filename': stored.stored_name,
        'originalName': stored.original_name,
        'size': format_file_size(stored.size_bytes),
        'sizeBytes': stored.size_bytes,
        'uploadDate': format_upload_date(stored.modified_time),
    }


@app.errorhandler(ShareError)
def handle_share_error(error):
    return jsonify({'error': error.message}), error.status_code


@app.errorhandler(400)
def handle_bad_request(error):
    return jsonify({'error': 'Invalid or interrupted request'}), 400


@app.errorhandler(404)
def handle_not_found(error):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(413)
def handle_request_too_large(error):
    return jsonify({'error': PayloadTooLarge.message}), 413


@app.errorhandler(500)
def handle_internal_error(error):
    return jsonify({'error': 'Error processing the request'}), 500


@app.route('/')
def index():
    return render_template_string(HTML_TEMPLATE)


@app.route('/api/network-info')
def network_info():
    return jsonify({'networkUrl': f"http://{get_local_ip()}:{app.config['PORT']}"})


@app.route('/upload', methods=['POST'])
def upload_files():
    streams = request.upload_streams
    try:
        accepted = [part.stream for part in request.files.getlist('files')
                    if isinstance(part.stream, UploadStream)]
        for stream in streams:
            if stream not in accepted:
                stream.discard()
        if not accepted:
            raise NoFilesProvided()
        stored = promote_uploads(accepted, all_or_nothing=app.config['UPLOAD_ALL_OR_NOTHING'])
    except (PayloadTooLarge, StorageFull):
        for stream in streams:
            stream.discard()
        raise
    finally:
        # anything still in progress is left for the cleanup sweep
        for stream in streams:
            stream.close()

    files = [
        {
            'originalName': f.original_name,
            'filename': f.stored_name,
            'size': format_file_size(f.size_bytes),
            'sizeBytes': f.size_bytes,
        }
        for f in stored
    ]
    logger.info("Upload request finished: %d file(s)", len(files))
    return jsonify({
        'success': True,
        'message': f'{len(files)} file(s) uploaded successfully',
        'files': files,
    })


@app.route('/files')
def list_shared_files():
    files = list_files(app.config['UPLOAD_FOLDER'])
    logger.debug("Files found: %d", len(files))
    return jsonify([describe_file(f) for f in files])


@app.route('/download/<filename>')
def download_file(filename):
    folder = app.config['UPLOAD_FOLDER']
    handle, stored = open_download(folder, filename)
    logger.info("Starting download: %s", stored.original_name)

    response = send_file(
        handle,
        mimetype='application/octet-stream',
        as_attachment=True,
        download_name=stored.original_name,
        conditional=False,
    )
    # track completion so the file can delete itself after the last byte
    response.response = stream_download(
        handle,
        os.path.join(folder, stored.stored_name),
        chunk_size=app.config['DOWNLOAD_CHUNK_SIZE'],
        delete_delay=app.config['DOWNLOAD_DELETE_DELAY'],
    )
    response.headers['Accept-Ranges'] = 'bytes'
    response.content_length = stored.size_bytes
    response.call_on_close(handle.close)
    return response


@app.route('/delete/<filename>', methods=['DELETE'])
def delete_file(filename):
    remove_file(app.config['UPLOAD_FOLDER'], filename)
    return jsonify({'success': True, 'message': 'File deleted successfully'})


def get_local_ip():
    """Get the local IP address"""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"


def register_mdns(port):
    """Register service for network discovery"""
    local_ip = get_local_ip()
    hostname = socket.gethostname()

    service_info = ServiceInfo(
        "_http._tcp.local.",
        f"InShare ({hostname})._http._tcp.local.",
        addresses=[socket.inet_aton(local_ip)],
        port=port,
        properties={'path': '/'},
    )

    zeroconf = Zeroconf()
    zeroconf.register_service(service_info)
    logger.info("Service registered as 'InShare (%s)' on local network", hostname)
    return zeroconf, service_info


def make_request_handler(timeout):
    """Request handler whose sockets give up after ``timeout`` idle seconds."""
    if timeout is None:
        return None

    class TimeoutRequestHandler(WSGIRequestHandler):
        pass

    TimeoutRequestHandler.timeout = timeout
    return TimeoutRequestHandler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Share files on the local network; each file self-destructs after download.')
    parser.add_argument('--host', default='0.0.0.0')
    parser.add_argument('--port', type=int, default=app.config['PORT'])
    parser.add_argument('--upload-folder', default=app.config['UPLOAD_FOLDER'])
    parser.add_argument('--max-upload-size', type=int, default=app.config['MAX_UPLOAD_SIZE'],
                        help='per-file limit in bytes (default: unlimited)')
    parser.add_argument('--abandoned-max-age', type=int, default=app.config['ABANDONED_UPLOAD_MAX_AGE'],
                        help='seconds before an unfinished upload is removed')
    parser.add_argument('--retention-max-age', type=int, default=app.config['RETENTION_MAX_AGE'] or 0,
                        help='seconds before a file is removed even if never downloaded (0 disables)')
    parser.add_argument('--cleanup-interval', type=int, default=app.config['CLEANUP_INTERVAL'])
    parser.add_argument('--transfer-timeout', type=float, default=app.config['TRANSFER_TIMEOUT'],
                        help='socket idle timeout in seconds (default: none)')
    parser.add_argument('--all-or-nothing', action='store_true', default=app.config['UPLOAD_ALL_OR_NOTHING'],
                        help='undo the whole upload request if finalizing any file fails')
    parser.add_argument('--no-mdns', action='store_true', help='do not advertise the service via mDNS')
    return parser.parse_args(argv)


def print_banner(port, upload_folder, max_upload_size):
    local_ip = get_local_ip()
    limit = format_file_size(max_upload_size) if max_upload_size else 'UNLIMITED (disk space only)'

    print("\n" + "="*50)
    print("  📁 INSHARE FILE SERVER")
    print("="*50)
    print(f"\n  Local URL:   http://localhost:{port}")
    print(f"  Network URL: http://{local_ip}:{port}")
    print(f"\n  Files stored in: {upload_folder}")
    print(f"  File size limit: {limit}")
    print("  Auto-delete:     after download")
    print("\n  Share the network URL with devices on your network")
    print("="*50 + "\n")


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    app.config.update(
        PORT=args.port,
        UPLOAD_FOLDER=args.upload_folder,
        MAX_UPLOAD_SIZE=args.max_upload_size,
        ABANDONED_UPLOAD_MAX_AGE=args.abandoned_max_age,
        RETENTION_MAX_AGE=args.retention_max_age or None,
        CLEANUP_INTERVAL=args.cleanup_interval,
        TRANSFER_TIMEOUT=args.transfer_timeout,
        UPLOAD_ALL_OR_NOTHING=args.all_or_nothing,
    )

    ensure_storage_dir(args.upload_folder)
    purge_incomplete_uploads(args.upload_folder)
    reclaimer = Reclaimer(
        args.upload_folder,
        interval=args.cleanup_interval,
        abandoned_max_age=args.abandoned_max_age,
        retention_max_age=app.config['RETENTION_MAX_AGE'],
    )
    reclaimer.start()

    print_banner(args.port, args.upload_folder, args.max_upload_size)

    zeroconf = service_info = None
    if not args.no_mdns:
        zeroconf, service_info = register_mdns(args.port)

    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True,
                request_handler=make_request_handler(args.transfer_timeout))
    finally:
        reclaimer.shutdown()
        if zeroconf is not None:
            zeroconf.unregister_service(service_info)
            zeroconf.close()


if __name__ == '__main__':
    main()
