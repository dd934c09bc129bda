import threading
import unittest

from concord.stream import END_OF_STREAM, ChunkStream, StreamError, collect, iter_output
from concord.text import semantic_chunks, sentences


class TestChunkStream(unittest.TestCase):
    def test_chunks_then_end_of_stream(self):
        stream = ChunkStream()
        stream.put("a")
        stream.put("")
        stream.put("b")
        stream.close()
        self.assertEqual(list(stream), ["a", "b"])

    def test_error_is_raised_after_earlier_chunks(self):
        stream = ChunkStream.from_iterable(self._broken())
        received = []
        with self.assertRaises(ValueError):
            for chunk in stream:
                received.append(chunk)
        self.assertEqual(received, ["first"])

    def test_get_exposes_sentinels(self):
        stream = ChunkStream()
        stream.fail(RuntimeError("x"))
        stream.close()
        item = stream.get(timeout=1)
        self.assertIsInstance(item, StreamError)
        self.assertIsInstance(item.exc, RuntimeError)

        done = ChunkStream.from_iterable([])
        self.assertIs(done.get(timeout=1), END_OF_STREAM)

    def test_put_after_close_is_rejected(self):
        stream = ChunkStream()
        stream.close()
        with self.assertRaises(RuntimeError):
            stream.put("late")

    def test_producer_thread(self):
        stream = ChunkStream()

        def produce():
            for word in ("x", "y", "z"):
                stream.put(word)
            stream.close()

        threading.Thread(target=produce).start()
        self.assertEqual("".join(stream), "xyz")

    @staticmethod
    def _broken():
        yield "first"
        raise ValueError("boom")


class TestIterOutput(unittest.TestCase):
    def test_string_is_split_into_sentence_groups(self):
        text = "One. Two! Three? Four."
        chunks = collect(text)
        self.assertEqual(chunks, ["One. Two! ", "Three? Four."])
        self.assertEqual("".join(chunks), text)

    def test_iterables_pass_through(self):
        self.assertEqual(list(iter_output(iter(["a", "", "b"]))), ["a", "b"])
        self.assertEqual(collect(None), [])

    def test_sentences_round_trip(self):
        text = "No terminal punctuation here"
        self.assertEqual("".join(sentences(text)), text)
        self.assertEqual(semantic_chunks("A. B. C."), ["A. B. C."])


if __name__ == "__main__":
    unittest.main()
