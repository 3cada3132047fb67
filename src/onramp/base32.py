import base64

def encode(b): # takes bytes, returns native string
    assert isinstance(b, bytes), (type(b), b)
    out = base64.b32encode(b).lower().rstrip(b"=")
    return out.decode("ascii")
