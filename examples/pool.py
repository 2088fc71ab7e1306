"""
'management' use case - the owner process fans work out to a bounded set of workers

Each word is counted in its own forked worker, at most NUM_WORKERS at a time.
Results come back in the order the tasks were queued, grouped by a tag.
"""
import time

from forkpool import ForkPool

NUM_WORKERS = 4

# some work to be divided up among the processes
documents = {
    "short": ["foo", "bar", "baz"],
    "long": ["lorem ipsum dolor sit amet", "consectetur adipiscing elit"],
}


def count_words(text):
    time.sleep(0.2)
    return len(text.split())


with ForkPool(NUM_WORKERS) as pool:
    for tag, texts in documents.items():
        for text in texts:
            pool.fork(count_words, text, tag)

    for tag in documents:
        print("{}: {}".format(tag, pool.get(tag).to_list()))

    total = sum(pool.get().to_list())
    print("The result is {}".format(total))
