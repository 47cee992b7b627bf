#!/usr/bin/env python3
"""
HTTP tests for server.py

Exercises the upload, listing, self-destructing download and delete
endpoints through Flask's test client against a temporary share folder.
"""

import builtins
import errno
import io
import os
import socket
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock, patch
from urllib.parse import quote

from werkzeug.serving import make_server

import server
from server import app, format_file_size, make_request_handler
from storage import UPLOADING_SUFFIX


class ServerTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.folder = self._tmp.name
        self._saved_config = dict(app.config)
        app.config.update(
            UPLOAD_FOLDER=self.folder,
            MAX_UPLOAD_SIZE=None,
            DOWNLOAD_DELETE_DELAY=0.01,
            UPLOAD_ALL_OR_NOTHING=False,
        )
        self.client = app.test_client()

    def tearDown(self):
        app.config.clear()
        app.config.update(self._saved_config)
        self._tmp.cleanup()

    def upload(self, *files):
        data = {'files': [(io.BytesIO(content), name) for name, content in files]}
        return self.client.post('/upload', data=data, content_type='multipart/form-data')

    def wait_until_gone(self, name):
        path = os.path.join(self.folder, name)
        for _ in range(100):
            if not os.path.exists(path):
                return
            time.sleep(0.02)
        self.fail(f'{name} was not deleted')


class TestUpload(ServerTestCase):

    def test_upload_single_file(self):
        response = self.upload(('report.pdf', b'%PDF-'))

        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertTrue(body['success'])
        self.assertEqual(body['message'], '1 file(s) uploaded successfully')
        [uploaded] = body['files']
        self.assertEqual(uploaded['originalName'], 'report.pdf')
        self.assertEqual(uploaded['sizeBytes'], 5)
        self.assertEqual(uploaded['size'], '5 Bytes')
        self.assertRegex(uploaded['filename'], r'^\d+-report\.pdf$')
        self.assertEqual(os.listdir(self.folder), [uploaded['filename']])

    def test_upload_many_files_with_same_name(self):
        response = self.upload(('a.txt', b'one'), ('a.txt', b'two'), ('b.txt', b'three'))

        self.assertEqual(response.status_code, 200)
        names = [f['filename'] for f in response.get_json()['files']]
        self.assertEqual(len(set(names)), 3)
        self.assertFalse([n for n in os.listdir(self.folder) if n.endswith(UPLOADING_SUFFIX)])

    def test_upload_without_files(self):
        response = self.client.post('/upload', data={'note': 'hi'}, content_type='multipart/form-data')

        self.assertEqual(response.status_code, 400)
        self.assertIn('error', response.get_json())
        self.assertEqual(os.listdir(self.folder), [])

    def test_parts_under_other_fields_are_discarded(self):
        data = {'other': (io.BytesIO(b'data'), 'x.txt')}
        response = self.client.post('/upload', data=data, content_type='multipart/form-data')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(os.listdir(self.folder), [])

    def test_upload_over_configured_limit(self):
        app.config['MAX_UPLOAD_SIZE'] = 4

        response = self.upload(('small.txt', b'1234'), ('big.bin', b'12345'))

        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.get_json(), {'error': 'File too large'})
        self.assertEqual(os.listdir(self.folder), [])

    def test_rename_failure_reports_error(self):
        with patch('storage.os.link', side_effect=OSError('boom')):
            response = self.upload(('a.txt', b'abc'))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {'error': 'Error finalizing upload'})
        self.assertEqual(self.client.get('/files').get_json(), [])

    def test_upload_long_file_name(self):
        response = self.upload(('small.txt', b'small'), ('a' * 240 + '.txt', b'long'))

        self.assertEqual(response.status_code, 200)
        small, long = response.get_json()['files']
        self.assertEqual(small['originalName'], 'small.txt')
        self.assertTrue(long['originalName'].startswith('aaaa'))
        self.assertTrue(long['originalName'].endswith('.txt'))
        self.assertFalse([n for n in os.listdir(self.folder) if n.endswith(UPLOADING_SUFFIX)])

    def test_disk_full_discards_every_part(self):
        real_open = builtins.open

        def open_on_full_disk(path, mode='r', *args, **kwargs):
            handle = real_open(path, mode, *args, **kwargs)
            if 'b.bin' not in path:
                return handle
            failing = MagicMock(wraps=handle)
            failing.write.side_effect = OSError(errno.ENOSPC, 'No space left on device')
            return failing

        with patch('storage.open', create=True, side_effect=open_on_full_disk):
            response = self.upload(('a.bin', b'first'), ('b.bin', b'second'))

        self.assertEqual(response.status_code, 507)
        self.assertEqual(response.get_json(), {'error': 'Not enough disk space to store the file'})
        self.assertEqual(os.listdir(self.folder), [])


class TestInterruptedUpload(unittest.TestCase):
    """Uploads cut off mid-body over a real socket."""

    boundary = 'inshare-test-boundary'

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.folder = self._tmp.name
        self._saved_config = dict(app.config)
        app.config.update(UPLOAD_FOLDER=self.folder, MAX_UPLOAD_SIZE=None)
        self.httpd = make_server('127.0.0.1', 0, app, threaded=True)
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)
        self.thread.start()

    def tearDown(self):
        self.httpd.shutdown()
        self.httpd.server_close()
        app.config.clear()
        app.config.update(self._saved_config)
        self._tmp.cleanup()

    def send_truncated(self, body, declared_length):
        head = (
            'POST /upload HTTP/1.1\r\n'
            'Host: localhost\r\n'
            f'Content-Type: multipart/form-data; boundary={self.boundary}\r\n'
            f'Content-Length: {declared_length}\r\n'
            'Connection: close\r\n'
            '\r\n'
        ).encode('ascii')
        reply = b''
        with socket.create_connection(('127.0.0.1', self.httpd.server_port), timeout=10) as sock:
            sock.sendall(head + body)
            sock.shutdown(socket.SHUT_WR)
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                reply += chunk
        return reply

    def test_disconnect_mid_part_keeps_partial_upload(self):
        body = (
            f'--{self.boundary}\r\n'
            'Content-Disposition: form-data; name="files"; filename="a.bin"\r\n'
            'Content-Type: application/octet-stream\r\n'
            '\r\n'
        ).encode('ascii') + b'x' * 65536

        reply = self.send_truncated(body, len(body) + 1024)

        status_line = reply.split(b'\r\n', 1)[0]
        self.assertIn(b' 400 ', status_line)
        names = os.listdir(self.folder)
        self.assertEqual(len(names), 1)
        self.assertRegex(names[0], r'^\d+-a\.bin\.uploading$')


class TestListing(ServerTestCase):

    def test_lists_uploaded_files(self):
        self.upload(('report.pdf', b'12345'))
        with open(os.path.join(self.folder, '1-partial.bin' + UPLOADING_SUFFIX), 'wb') as f:
            f.write(b'partial')

        response = self.client.get('/files')

        self.assertEqual(response.status_code, 200)
        [entry] = response.get_json()
        self.assertEqual(entry['originalName'], 'report.pdf')
        self.assertEqual(entry['sizeBytes'], 5)
        self.assertEqual(set(entry), {'filename', 'originalName', 'size', 'sizeBytes', 'uploadDate'})

    def test_listing_is_repeatable(self):
        self.upload(('a.txt', b'a'), ('b.txt', b'b'))
        first = self.client.get('/files').get_json()
        second = self.client.get('/files').get_json()
        self.assertEqual(first, second)


class TestDownload(ServerTestCase):

    def test_download_then_self_destruct(self):
        stored = self.upload(('report.pdf', b'%PDF-'))
        name = stored.get_json()['files'][0]['filename']

        response = self.client.get(f'/download/{quote(name)}')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b'%PDF-')
        self.assertEqual(response.mimetype, 'application/octet-stream')
        self.assertEqual(response.headers['Content-Length'], '5')
        self.assertEqual(response.headers['Accept-Ranges'], 'bytes')
        self.assertIn('attachment', response.headers['Content-Disposition'])
        self.assertIn('report.pdf', response.headers['Content-Disposition'])

        self.wait_until_gone(name)
        self.assertEqual(self.client.get('/files').get_json(), [])
        again = self.client.get(f'/download/{quote(name)}')
        self.assertEqual(again.status_code, 404)

    def test_round_trip_binary_with_non_ascii_name(self):
        payload = os.urandom(256 * 1024)
        stored = self.upload(('informe año 日本.bin', payload))
        entry = stored.get_json()['files'][0]
        self.assertEqual(entry['originalName'], 'informe año 日本.bin')

        response = self.client.get(f"/download/{quote(entry['filename'])}")

        self.assertEqual(response.data, payload)
        disposition = response.headers['Content-Disposition']
        self.assertIn("filename*=UTF-8''" + quote('informe año 日本.bin', safe="!#$&+^`|~"), disposition)

    def test_download_missing_file(self):
        response = self.client.get('/download/1-missing.txt')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'error': 'File not found'})

    def test_in_progress_upload_is_not_downloadable(self):
        name = '1-partial.bin' + UPLOADING_SUFFIX
        with open(os.path.join(self.folder, name), 'wb') as f:
            f.write(b'partial')

        response = self.client.get(f'/download/{name}')

        self.assertEqual(response.status_code, 404)
        self.assertTrue(os.path.exists(os.path.join(self.folder, name)))

    def test_unreadable_file(self):
        self.upload(('a.txt', b'abc'))
        name = os.listdir(self.folder)[0]
        with patch('storage.open', create=True, side_effect=PermissionError('denied')):
            response = self.client.get(f'/download/{name}')
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {'error': 'Error reading file'})
        self.assertTrue(os.path.exists(os.path.join(self.folder, name)))


class TestDelete(ServerTestCase):

    def test_delete_file(self):
        name = self.upload(('a.txt', b'abc')).get_json()['files'][0]['filename']

        response = self.client.delete(f'/delete/{quote(name)}')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'success': True, 'message': 'File deleted successfully'})
        self.assertEqual(os.listdir(self.folder), [])

    def test_delete_missing_file(self):
        response = self.client.delete('/delete/123-nothing.txt')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'error': 'File not found'})

    def test_delete_failure(self):
        name = self.upload(('a.txt', b'abc')).get_json()['files'][0]['filename']
        with patch('storage.os.remove', side_effect=PermissionError('locked')):
            response = self.client.delete(f'/delete/{name}')
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {'error': 'Error deleting file'})


class TestPages(ServerTestCase):

    def test_index(self):
        response = self.client.get('/')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'InShare', response.data)

    def test_network_info(self):
        with patch.object(server, 'get_local_ip', return_value='192.168.1.20'):
            response = self.client.get('/api/network-info')
        self.assertEqual(response.get_json(), {'networkUrl': f"http://192.168.1.20:{app.config['PORT']}"})


class TestErrors(ServerTestCase):

    def test_unknown_routes_answer_json(self):
        for path in ('/download/a%2Fb', '/nothing-here'):
            response = self.client.get(path)
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.mimetype, 'application/json')
            self.assertEqual(response.get_json(), {'error': 'Not found'})

    def test_wrong_method_answers_json(self):
        response = self.client.get('/delete/1-a.txt')
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.get_json(), {'error': 'Method not allowed'})


class TestHelpers(unittest.TestCase):

    def test_format_file_size(self):
        self.assertEqual(format_file_size(0), '0 Bytes')
        self.assertEqual(format_file_size(5), '5 Bytes')
        self.assertEqual(format_file_size(1536), '1.5 KB')
        self.assertEqual(format_file_size(1024 ** 2), '1 MB')
        self.assertEqual(format_file_size(10 * 1024 ** 3), '10 GB')

    def test_request_handler_timeout(self):
        self.assertIsNone(make_request_handler(None))
        self.assertEqual(make_request_handler(30).timeout, 30)

    def test_parse_args_defaults(self):
        args = server.parse_args([])
        self.assertEqual(args.port, app.config['PORT'])
        self.assertFalse(args.all_or_nothing)
        args = server.parse_args(['--retention-max-age', '0', '--max-upload-size', '1024', '--no-mdns'])
        self.assertEqual(args.retention_max_age, 0)
        self.assertEqual(args.max_upload_size, 1024)
        self.assertTrue(args.no_mdns)


if __name__ == '__main__':
    unittest.main()
